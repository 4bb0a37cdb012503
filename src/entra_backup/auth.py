from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Iterable, List, Optional, Protocol

import msal
from azure.identity import ManagedIdentityCredential

from .audit import JsonAuditLogger
from .config import (
    AccessTokenAuth,
    CertificateAuth,
    ClientSecretAuth,
    ManagedIdentityAuth,
    TenantConfig,
)

logger = logging.getLogger(__name__)


class TokenProvider(Protocol):
    def acquire_token(self, scopes: Iterable[str]) -> str:
        ...


class StaticTokenAuthenticator:
    """Hands out a bearer token that was acquired outside this process."""

    def __init__(self, token: str):
        if not token:
            raise ValueError("An access token is required")
        self.token = token

    def acquire_token(self, scopes: Iterable[str]) -> str:
        return self.token


class GraphAuthenticator:
    """App-only token acquisition for Microsoft Graph in one tenant.

    Client secret and certificate flows go through one MSAL confidential client
    per authenticator so its in-memory token cache is reused across requests.
    Managed identities rely on the platform cache.
    """

    def __init__(self, tenant_config: TenantConfig, audit_logger: JsonAuditLogger):
        self.tenant_config = tenant_config
        self.audit = audit_logger
        self._app: Optional[msal.ConfidentialClientApplication] = None
        self._lock = Lock()

    def acquire_token(self, scopes: Iterable[str]) -> str:
        auth_config = self.tenant_config.auth
        scope_list: List[str] = list(scopes)

        if isinstance(auth_config, (ClientSecretAuth, CertificateAuth)):
            app = self._confidential_client()
            result = app.acquire_token_silent(scope_list, account=None)
            if not result:
                result = app.acquire_token_for_client(scopes=scope_list)
                self.audit.info(
                    "acquired_app_token",
                    tenant_id=self.tenant_config.tenant_id,
                    auth_type=auth_config.type,
                )
            return self._extract_token(result)

        if isinstance(auth_config, ManagedIdentityAuth):
            credential = ManagedIdentityCredential(client_id=auth_config.client_id)
            result = credential.get_token(*scope_list)
            self.audit.info(
                "acquired_app_token",
                tenant_id=self.tenant_config.tenant_id,
                auth_type="managed_identity",
            )
            return result.token

        if isinstance(auth_config, AccessTokenAuth):
            return auth_config.token.resolve()

        raise ValueError("Unsupported authentication configuration")

    def _confidential_client(self) -> msal.ConfidentialClientApplication:
        with self._lock:
            if self._app is None:
                auth_config = self.tenant_config.auth
                if isinstance(auth_config, ClientSecretAuth):
                    credential = auth_config.client_secret.resolve()
                elif isinstance(auth_config, CertificateAuth):
                    credential = self._load_certificate(auth_config)
                else:
                    raise ValueError("Confidential client requires secret or certificate auth")
                self._app = msal.ConfidentialClientApplication(
                    client_id=auth_config.client_id,
                    client_credential=credential,
                    authority=f"{auth_config.authority_host}/{self.tenant_config.tenant_id}",
                    token_cache=msal.TokenCache(),
                )
            return self._app

    @staticmethod
    def _extract_token(result: Optional[dict]) -> str:
        if not result or "access_token" not in result:
            raise RuntimeError(f"Token acquisition failed: {json.dumps(result)}")
        return result["access_token"]

    @staticmethod
    def _load_certificate(auth_config: CertificateAuth) -> dict:
        password = None
        if auth_config.certificate_password:
            password = auth_config.certificate_password.resolve()
        path = Path(auth_config.certificate_path)
        try:
            with path.open("r", encoding="utf-8") as handle:
                private_key = handle.read()
        except OSError as exc:
            raise RuntimeError(f"Failed to read certificate at {path}: {exc}") from exc

        return {
            "private_key": private_key,
            "thumbprint": auth_config.thumbprint,
            "passphrase": password,
        }
