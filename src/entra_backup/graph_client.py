from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional

import httpx

from .audit import JsonAuditLogger
from .auth import TokenProvider
from .config import TenantConfig
from .errors import GraphRequestError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)
IDEMPOTENT_METHODS = ("GET", "HEAD")


class GraphClient:
    """Tenant-scoped Microsoft Graph client with bounded retries and logging.

    Only idempotent requests are retried. A POST that timed out or failed with
    a 5xx may still have created the object, so create calls surface the first
    failure to the caller.
    """

    def __init__(
        self,
        tenant_config: TenantConfig,
        authenticator: TokenProvider,
        audit_logger: JsonAuditLogger,
        timeout: float = 30.0,
        max_retries: int = 3,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tenant_config = tenant_config
        self.authenticator = authenticator
        self.audit = audit_logger
        self.timeout = timeout
        self.max_retries = max_retries
        self.sleep = sleep
        self.session = httpx.Client(timeout=self.timeout, transport=transport)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _auth_header(self, scopes: Iterable[str]) -> Dict[str, str]:
        token = self.authenticator.acquire_token(scopes)
        return {"Authorization": f"Bearer {token}"}

    def url_for(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        return f"{self.tenant_config.graph_base_url}{path}"

    def request(
        self,
        method: str,
        url: str,
        scopes: Optional[Iterable[str]] = None,
        log_errors: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a Graph request and raise ``GraphRequestError`` on a 4xx/5xx.

        Callers whose lookups are expected to fail pass ``log_errors=False``;
        their failures are then only logged at debug level.
        """
        scopes = scopes or self.tenant_config.default_scopes
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self._auth_header(scopes))
        retries = self.max_retries if method.upper() in IDEMPOTENT_METHODS else 0
        backoff = 1.0

        for attempt in range(1, retries + 2):
            try:
                response = self.session.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if attempt > retries:
                    raise
                self.audit.warning(
                    "graph_transport_error",
                    tenant_id=self.tenant_config.tenant_id,
                    url=url,
                    error=str(exc),
                    attempt=attempt,
                )
                self.sleep(backoff)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code in RETRYABLE_STATUS and attempt <= retries:
                retry_after = self._get_retry_after_seconds(response) or backoff
                self.audit.warning(
                    "graph_throttled",
                    tenant_id=self.tenant_config.tenant_id,
                    status=response.status_code,
                    retry_after=retry_after,
                    attempt=attempt,
                )
                self.sleep(retry_after)
                backoff = min(backoff * 2, 30)
                continue

            if response.status_code >= 400:
                log = self.audit.error if log_errors else self.audit.debug
                log(
                    "graph_request_failed",
                    tenant_id=self.tenant_config.tenant_id,
                    method=method,
                    status=response.status_code,
                    url=url,
                    body=response.text[:500],
                )
                raise GraphRequestError(response.status_code, response.text, url=url)

            logger.debug("%s %s -> %s", method, url, response.status_code)
            return response

        raise RuntimeError("Maximum retry attempts exceeded for Graph request")

    @staticmethod
    def _get_retry_after_seconds(response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", self.url_for(path), **kwargs)

    def post(self, path: str, json: Any, **kwargs: Any) -> httpx.Response:
        return self.request("POST", self.url_for(path), json=json, **kwargs)

    def patch(self, path: str, json: Any, **kwargs: Any) -> httpx.Response:
        return self.request("PATCH", self.url_for(path), json=json, **kwargs)
