from __future__ import annotations

import os
from pathlib import Path
from typing import List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PAGE_SIZE = 999


class SecretRef(BaseModel):
    """Reference to a secret source without storing the secret in code.

    Secrets should be injected through environment variables at runtime. Inline
    values are accepted for local development only.
    """

    env: Optional[str] = Field(
        default=None, description="Environment variable name containing the secret"
    )
    value: Optional[str] = Field(
        default=None,
        description="Inline value (use only for local development; avoid in production)",
    )

    model_config = ConfigDict(extra="forbid")

    def resolve(self) -> str:
        if self.env:
            env_value = os.getenv(self.env)
            if env_value:
                return env_value
            raise ValueError(f"Environment variable {self.env} is not set")
        if self.value:
            return self.value
        raise ValueError("No secret reference provided for resolution")


class ClientSecretAuth(BaseModel):
    type: Literal["client_secret"]
    client_id: str
    client_secret: SecretRef
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host",
    )

    model_config = ConfigDict(extra="forbid")


class CertificateAuth(BaseModel):
    type: Literal["certificate"]
    client_id: str
    certificate_path: Path
    thumbprint: str
    certificate_password: Optional[SecretRef] = None
    authority_host: str = Field(
        default="https://login.microsoftonline.com",
        description="Entra ID authority host",
    )

    model_config = ConfigDict(extra="forbid")


class ManagedIdentityAuth(BaseModel):
    type: Literal["managed_identity"]
    client_id: Optional[str] = Field(
        default=None, description="Optional user-assigned managed identity client ID"
    )

    model_config = ConfigDict(extra="forbid")


class AccessTokenAuth(BaseModel):
    """A token acquired elsewhere (e.g. Graph Explorer or `az account get-access-token`)."""

    type: Literal["access_token"]
    token: SecretRef

    model_config = ConfigDict(extra="forbid")


AuthConfig = Union[ClientSecretAuth, CertificateAuth, ManagedIdentityAuth, AccessTokenAuth]


class TenantConfig(BaseModel):
    tenant_id: str
    display_name: Optional[str] = None
    auth: AuthConfig = Field(discriminator="type")
    default_scopes: List[str] = Field(
        default_factory=lambda: ["https://graph.microsoft.com/.default"]
    )
    graph_base_url: str = Field(
        default="https://graph.microsoft.com",
        description="Graph endpoint. Override for national clouds if needed.",
    )

    model_config = ConfigDict(extra="forbid")

    @field_validator("default_scopes")
    @classmethod
    def ensure_scopes(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("At least one scope must be provided per tenant")
        return value

    @field_validator("graph_base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


class PipelineSettings(BaseModel):
    page_size: int = Field(
        default=MAX_PAGE_SIZE,
        ge=1,
        le=MAX_PAGE_SIZE,
        description="$top used for list queries. Graph caps directory pages at 999.",
    )
    propagation_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Pause between creating a registration and creating its service principal",
    )
    restore_workers: int = Field(
        default=1, ge=1, description="Bundles restored in parallel"
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(
        default=3, ge=0, description="Retries for throttled or failed GET requests"
    )
    backup_directory: Path = Field(default=Path("backups"))

    model_config = ConfigDict(extra="forbid")


class BackupToolConfig(BaseModel):
    tenants: List[TenantConfig]
    settings: PipelineSettings = Field(default_factory=PipelineSettings)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def load(cls, path: Union[str, Path]) -> "BackupToolConfig":
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with config_path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

        return cls(**raw)
