from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .audit import JsonAuditLogger
from .config import PipelineSettings
from .graph_client import GraphClient
from .models import ApplicationRegistration, KeyCredential, PasswordCredential, ServicePrincipal
from .pagination import ListQuery, PaginatedFetcher

# Narrow field set for selection lists.
APPLICATION_LIST_FIELDS = (
    "id",
    "appId",
    "displayName",
    "description",
    "signInAudience",
    "publisherDomain",
    "createdDateTime",
    "tags",
)

# Everything the backup keeps for a registration.
APPLICATION_BACKUP_FIELDS = (
    "id", "appId", "displayName", "description", "notes",
    "publisherDomain", "signInAudience", "identifierUris",
    "web", "spa", "publicClient", "requiredResourceAccess", "api",
    "appRoles", "info", "isDeviceOnlyAuthSupported",
    "isFallbackPublicClient", "tags", "certification",
    "disabledByMicrosoftStatus", "groupMembershipClaims",
    "optionalClaims", "parentalControlSettings",
    "requestSignatureVerification", "servicePrincipalLockConfiguration",
    "tokenEncryptionKeyId", "verifiedPublisher", "defaultRedirectUri",
    "keyCredentials", "passwordCredentials", "createdDateTime",
)

SERVICE_PRINCIPAL_FIELDS = (
    "id", "appId", "displayName", "description", "servicePrincipalType",
    "accountEnabled", "appRoleAssignmentRequired", "preferredSingleSignOnMode",
    "loginUrl", "logoutUrl", "homepage", "replyUrls",
    "samlSingleSignOnSettings", "notificationEmailAddresses", "tags",
    "preferredTokenSigningKeyThumbprint", "keyCredentials", "passwordCredentials",
)


def odata_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


@dataclass
class TenantExecutionContext:
    tenant_id: str
    graph: GraphClient
    settings: PipelineSettings
    audit: JsonAuditLogger


class DirectoryOperations:
    """Graph calls on applications and service principals within one tenant."""

    def __init__(self, context: TenantExecutionContext):
        self.context = context
        self.graph = context.graph
        self.fetcher = PaginatedFetcher(context.graph, page_size=context.settings.page_size)

    # -- reads -----------------------------------------------------------

    def list_applications(self, select: Sequence[str] = APPLICATION_LIST_FIELDS) -> List[ApplicationRegistration]:
        items = self.fetcher.fetch_all(
            ListQuery(
                path="/v1.0/applications",
                select=select,
                orderby="displayName",
                count=True,
                eventual_consistency=True,
            )
        )
        return [ApplicationRegistration.from_graph(item) for item in items]

    def get_application_by_app_id(
        self, app_id: str, select: Sequence[str] = APPLICATION_BACKUP_FIELDS
    ) -> Optional[ApplicationRegistration]:
        item = self._first_by_app_id("/v1.0/applications", app_id, select)
        return ApplicationRegistration.from_graph(item) if item else None

    def get_service_principal_by_app_id(
        self, app_id: str, select: Sequence[str] = SERVICE_PRINCIPAL_FIELDS
    ) -> Optional[ServicePrincipal]:
        item = self._first_by_app_id("/v1.0/servicePrincipals", app_id, select)
        return ServicePrincipal.from_graph(item) if item else None

    def _first_by_app_id(self, path: str, app_id: str, select: Sequence[str]) -> Optional[Dict[str, Any]]:
        response = self.graph.get(
            path,
            params={"$filter": f"appId eq {odata_quote(app_id)}", "$select": ",".join(select)},
            headers={"ConsistencyLevel": "eventual"},
        )
        values = response.json().get("value") or []
        return values[0] if values else None

    def get_service_principal_key_credentials(self, service_principal_id: str) -> List[KeyCredential]:
        response = self.graph.get(
            f"/v1.0/servicePrincipals/{service_principal_id}",
            params={"$select": "keyCredentials"},
        )
        return [KeyCredential.from_graph(item) for item in response.json().get("keyCredentials") or []]

    def list_synchronization_jobs(self, service_principal_id: str) -> List[Dict[str, Any]]:
        response = self.graph.get(
            f"/v1.0/servicePrincipals/{service_principal_id}/synchronization/jobs", log_errors=False
        )
        return response.json().get("value") or []

    def list_synchronization_templates(self, service_principal_id: str) -> List[Dict[str, Any]]:
        response = self.graph.get(
            f"/v1.0/servicePrincipals/{service_principal_id}/synchronization/templates", log_errors=False
        )
        return response.json().get("value") or []

    def list_app_role_assignments(self, service_principal_id: str) -> List[Dict[str, Any]]:
        return self.fetcher.fetch_all(
            ListQuery(path=f"/v1.0/servicePrincipals/{service_principal_id}/appRoleAssignedTo")
        )

    def get_user(self, user_id: str) -> Dict[str, Any]:
        return self.graph.get(f"/v1.0/users/{user_id}", params={"$select": "id,displayName"}, log_errors=False).json()

    def get_group(self, group_id: str) -> Dict[str, Any]:
        return self.graph.get(f"/v1.0/groups/{group_id}", params={"$select": "id,displayName"}, log_errors=False).json()

    # -- writes ----------------------------------------------------------

    def create_application(self, payload: Dict[str, Any]) -> ApplicationRegistration:
        response = self.graph.post("/v1.0/applications", json=payload)
        return ApplicationRegistration.from_graph(response.json())

    def update_application(self, object_id: str, payload: Dict[str, Any]) -> None:
        self.graph.patch(f"/v1.0/applications/{object_id}", json=payload)

    def create_service_principal(self, payload: Dict[str, Any]) -> ServicePrincipal:
        response = self.graph.post("/v1.0/servicePrincipals", json=payload)
        return ServicePrincipal.from_graph(response.json())

    def update_service_principal(self, service_principal_id: str, payload: Dict[str, Any]) -> None:
        self.graph.patch(f"/v1.0/servicePrincipals/{service_principal_id}", json=payload)

    def add_password(self, service_principal_id: str, credential: Dict[str, Any]) -> PasswordCredential:
        response = self.graph.post(
            f"/v1.0/servicePrincipals/{service_principal_id}/addPassword",
            json={"passwordCredential": credential},
        )
        return PasswordCredential.from_graph(response.json())
