"""Typed snapshots of the directory objects that make up a backup bundle.

Field names follow Graph's camelCase on the wire and snake_case in Python.
Every model allows extra properties so that Graph fields not named here are
carried through a backup and back out unchanged.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SCHEMA_VERSION = 1

# Tag Graph puts on gallery/non-gallery SAML enterprise applications.
SAML_APPLICATION_TAG = "WindowsAzureActiveDirectoryCustomSingleSignOnApplication"


class GraphModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @classmethod
    def from_graph(cls, payload: Dict[str, Any]):
        return cls.model_validate(payload)


class PasswordCredential(GraphModel):
    """A client secret. Graph never returns the secret text after creation."""

    display_name: Optional[str] = None
    key_id: Optional[str] = None
    hint: Optional[str] = None
    start_date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    custom_key_identifier: Optional[str] = None


class KeyCredential(GraphModel):
    """A certificate. ``key`` is the base64 public certificate when Graph returns it."""

    display_name: Optional[str] = None
    key_id: Optional[str] = None
    type: Optional[str] = None
    usage: Optional[str] = None
    key: Optional[str] = None
    start_date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    custom_key_identifier: Optional[str] = None


class WebApplication(GraphModel):
    redirect_uris: List[str] = Field(default_factory=list)
    home_page_url: Optional[str] = None
    logout_url: Optional[str] = None
    implicit_grant_settings: Optional[Dict[str, Any]] = None


class SpaApplication(GraphModel):
    redirect_uris: List[str] = Field(default_factory=list)


class PublicClientApplication(GraphModel):
    redirect_uris: List[str] = Field(default_factory=list)


class ApplicationRegistration(GraphModel):
    id: Optional[str] = None
    app_id: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    publisher_domain: Optional[str] = None
    sign_in_audience: Optional[str] = None
    identifier_uris: List[str] = Field(default_factory=list)
    web: Optional[WebApplication] = None
    spa: Optional[SpaApplication] = None
    public_client: Optional[PublicClientApplication] = None
    required_resource_access: List[Dict[str, Any]] = Field(default_factory=list)
    api: Optional[Dict[str, Any]] = None
    app_roles: List[Dict[str, Any]] = Field(default_factory=list)
    info: Optional[Dict[str, Any]] = None
    tags: List[str] = Field(default_factory=list)
    optional_claims: Optional[Dict[str, Any]] = None
    parental_control_settings: Optional[Dict[str, Any]] = None
    verified_publisher: Optional[Dict[str, Any]] = None
    service_principal_lock_configuration: Optional[Dict[str, Any]] = None
    group_membership_claims: Optional[str] = None
    is_fallback_public_client: Optional[bool] = None
    is_device_only_auth_supported: Optional[bool] = None
    default_redirect_uri: Optional[str] = None
    token_encryption_key_id: Optional[str] = None
    certification: Optional[Dict[str, Any]] = None
    disabled_by_microsoft_status: Optional[str] = None
    request_signature_verification: Optional[Dict[str, Any]] = None
    key_credentials: List[KeyCredential] = Field(default_factory=list)
    password_credentials: List[PasswordCredential] = Field(default_factory=list)
    created_date_time: Optional[datetime] = None


class ServicePrincipal(GraphModel):
    id: Optional[str] = None
    app_id: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    service_principal_type: Optional[str] = None
    account_enabled: Optional[bool] = None
    app_role_assignment_required: Optional[bool] = None
    preferred_single_sign_on_mode: Optional[str] = None
    login_url: Optional[str] = None
    logout_url: Optional[str] = None
    homepage: Optional[str] = None
    reply_urls: List[str] = Field(default_factory=list)
    saml_single_sign_on_settings: Optional[Dict[str, Any]] = None
    notification_email_addresses: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    preferred_token_signing_key_thumbprint: Optional[str] = None
    key_credentials: Optional[List[KeyCredential]] = None
    password_credentials: Optional[List[PasswordCredential]] = None

    @property
    def is_saml(self) -> bool:
        return SAML_APPLICATION_TAG in self.tags or self.preferred_single_sign_on_mode == "saml"


class SynchronizationJob(GraphModel):
    id: Optional[str] = None
    template_id: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None
    status: Optional[Dict[str, Any]] = None


class SynchronizationTemplate(GraphModel):
    id: Optional[str] = None
    application_id: Optional[str] = None
    factory_tag: Optional[str] = None
    default: Optional[bool] = None
    description: Optional[str] = None
    metadata: List[Dict[str, Any]] = Field(default_factory=list)


class AppRoleAssignment(GraphModel):
    id: Optional[str] = None
    app_role_id: Optional[str] = None
    principal_id: Optional[str] = None
    principal_type: Optional[str] = None
    principal_display_name: Optional[str] = None
    resource_id: Optional[str] = None


class BackupBundle(GraphModel):
    """One application's registration, principal and credentials at one point in time."""

    schema_version: int = SCHEMA_VERSION
    application: ApplicationRegistration
    service_principal: Optional[ServicePrincipal] = None
    secrets: List[PasswordCredential] = Field(default_factory=list)
    certificates: List[KeyCredential] = Field(default_factory=list)
    sync_job: Optional[SynchronizationJob] = None
    sync_template: Optional[SynchronizationTemplate] = None
    app_role_assignments: List[AppRoleAssignment] = Field(default_factory=list)
    backup_date: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.application.display_name or self.application.app_id or "<unnamed application>"
