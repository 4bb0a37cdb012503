from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
from pytest import fixture

from entra_backup.audit import InMemoryAuditStore, JsonAuditLogger
from entra_backup.auth import StaticTokenAuthenticator
from entra_backup.config import BackupToolConfig, PipelineSettings, TenantConfig
from entra_backup.graph_client import GraphClient
from entra_backup.operations import DirectoryOperations, TenantExecutionContext
from entra_backup.tenant_manager import TenantManager

GRAPH = "https://graph.microsoft.com"

Route = Union[Callable[[httpx.Request], httpx.Response], Dict[str, Any], List[Any]]


def graph_error(status: int, message: str = "boom", code: str = "Request_BadRequest") -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": code, "message": message}})


def filter_app_id(request: httpx.Request) -> Optional[str]:
    match = re.search(r"appId eq '([^']*)'", request.url.params.get("$filter", ""))
    return match.group(1) if match else None


class FakeGraph:
    """Routes Graph requests by method and path and records every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.requests: List[httpx.Request] = []
        self._lock = threading.Lock()

    def add(self, method: str, path: str, route: Route) -> None:
        self.routes[(method, path)] = route

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        with self._lock:
            return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return graph_error(404, f"No route for {request.method} {request.url.path}", "Request_ResourceNotFound")
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)


@fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


@fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@fixture
def audit(audit_store: InMemoryAuditStore) -> JsonAuditLogger:
    return JsonAuditLogger(name="entra_backup.tests", store=audit_store)


@fixture
def tenant_config() -> TenantConfig:
    return TenantConfig(tenant_id="tenant-a", auth={"type": "access_token", "token": {"value": "token"}})


@fixture
def sleeps() -> List[float]:
    return []


@fixture
def graph(fake_graph: FakeGraph, tenant_config: TenantConfig, audit: JsonAuditLogger, sleeps: List[float]) -> GraphClient:
    return GraphClient(
        tenant_config,
        StaticTokenAuthenticator("token"),
        audit,
        max_retries=2,
        transport=httpx.MockTransport(fake_graph),
        sleep=sleeps.append,
    )


@fixture
def operations(graph: GraphClient, audit: JsonAuditLogger) -> DirectoryOperations:
    context = TenantExecutionContext(tenant_id="tenant-a", graph=graph, settings=PipelineSettings(), audit=audit)
    return DirectoryOperations(context)


def seed_tenant(fake_graph: FakeGraph, applications: List[Dict[str, Any]], principals: List[Dict[str, Any]]) -> None:
    """Serve a small directory for backups and accept creates for restores."""

    def by_app_id(items: List[Dict[str, Any]]) -> Callable[[httpx.Request], httpx.Response]:
        def handler(request: httpx.Request) -> httpx.Response:
            app_id = filter_app_id(request)
            matches = [item for item in items if app_id is None or item["appId"] == app_id]
            return httpx.Response(200, json={"value": matches})

        return handler

    def create_application(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        n = len(fake_graph.calls("POST", "/v1.0/applications"))
        return httpx.Response(201, json={**payload, "id": f"restored-object-{n}", "appId": f"restored-app-{n}"})

    def create_principal(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        return httpx.Response(201, json={**payload, "id": f"sp-{payload['appId']}"})

    fake_graph.add("GET", "/v1.0/applications", by_app_id(applications))
    fake_graph.add("GET", "/v1.0/servicePrincipals", by_app_id(principals))
    for principal in principals:
        fake_graph.add("GET", f"/v1.0/servicePrincipals/{principal['id']}/appRoleAssignedTo", {"value": []})
    fake_graph.add("POST", "/v1.0/applications", create_application)
    fake_graph.add("POST", "/v1.0/servicePrincipals", create_principal)


@fixture
def backup_config(tmp_path: Path) -> BackupToolConfig:
    return BackupToolConfig(
        tenants=[
            {"tenant_id": "tenant-a", "display_name": "Contoso", "auth": {"type": "access_token", "token": {"value": "token"}}},
            {"tenant_id": "tenant-b", "auth": {"type": "access_token", "token": {"value": "token"}}},
        ],
        settings={"propagation_delay_seconds": 0.5, "backup_directory": str(tmp_path / "backups")},
    )


@fixture
def manager(backup_config: BackupToolConfig, fake_graph: FakeGraph, audit: JsonAuditLogger, sleeps: List[float]) -> TenantManager:
    return TenantManager(
        backup_config,
        audit_logger=audit,
        authenticator_factory=lambda tenant, audit_logger: StaticTokenAuthenticator("token"),
        transport=httpx.MockTransport(fake_graph),
        sleep=sleeps.append,
    )
