from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List

import httpx
import pytest

from entra_backup.audit import InMemoryAuditStore
from entra_backup.collector import EntityGraphCollector
from entra_backup.errors import ApplicationNotFoundError
from entra_backup.models import ApplicationRegistration
from entra_backup.operations import DirectoryOperations

from .conftest import FakeGraph, filter_app_id, graph_error

CAPTURED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

APPLICATIONS: Dict[str, dict] = {
    "app-1": {"id": "obj-1", "appId": "app-1", "displayName": "Payroll", "signInAudience": "AzureADMyOrg"},
    "app-2": {"id": "obj-2", "appId": "app-2", "displayName": "Orphan", "signInAudience": "AzureADMyOrg"},
    "app-3": {
        "id": "obj-3",
        "appId": "app-3",
        "displayName": "Expenses",
        "web": {"redirectUris": ["https://expenses.contoso.com/signin"]},
    },
}

PRINCIPALS: Dict[str, dict] = {
    "app-1": {
        "id": "sp-1",
        "appId": "app-1",
        "displayName": "Payroll",
        "passwordCredentials": [{"displayName": "deploy", "keyId": "k-1", "hint": "abc"}],
        "keyCredentials": [{"displayName": "CN=payroll", "type": "AsymmetricX509Cert", "usage": "Verify", "key": None}],
    },
    "app-3": {"id": "sp-3", "appId": "app-3", "displayName": "Expenses", "passwordCredentials": None},
}


def listing(items: Dict[str, dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        app_id = filter_app_id(request)
        if app_id is None:
            return httpx.Response(200, json={"value": list(items.values())})
        return httpx.Response(200, json={"value": [items[app_id]] if app_id in items else []})

    return handler


@pytest.fixture
def directory(fake_graph: FakeGraph) -> FakeGraph:
    fake_graph.add("GET", "/v1.0/applications", listing(APPLICATIONS))
    fake_graph.add("GET", "/v1.0/servicePrincipals", listing(PRINCIPALS))
    fake_graph.add(
        "GET",
        "/v1.0/servicePrincipals/sp-1",
        {"keyCredentials": [{"displayName": "CN=payroll", "type": "AsymmetricX509Cert", "usage": "Verify", "key": "TUlJQw=="}]},
    )
    fake_graph.add("GET", "/v1.0/servicePrincipals/sp-1/synchronization/jobs", {"value": [{"id": "job-1", "templateId": "scim"}]})
    fake_graph.add("GET", "/v1.0/servicePrincipals/sp-1/synchronization/templates", {"value": [{"id": "scim", "factoryTag": "scim"}]})
    fake_graph.add(
        "GET",
        "/v1.0/servicePrincipals/sp-1/appRoleAssignedTo",
        {"value": [{"id": "a-1", "principalId": "u-1", "principalType": "User", "principalDisplayName": "Adele"}]},
    )
    fake_graph.add("GET", "/v1.0/servicePrincipals/sp-3/appRoleAssignedTo", {"value": []})
    # sp-3 has no synchronization: those routes answer 404 from FakeGraph.
    return fake_graph


@pytest.fixture
def collector(operations: DirectoryOperations) -> EntityGraphCollector:
    return EntityGraphCollector(operations, clock=lambda: CAPTURED_AT)


def selection(*app_ids: str) -> List[ApplicationRegistration]:
    return [ApplicationRegistration(app_id=app_id, display_name=APPLICATIONS.get(app_id, {}).get("displayName")) for app_id in app_ids]


def test_missing_service_principal_is_recorded_not_fatal(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    result = collector.collect(selection("app-1", "app-2", "app-3"))

    assert len(result.bundles) == 3
    assert result.failures == []
    first, second, third = result.bundles
    assert second.service_principal is None
    assert second.application.display_name == "Orphan"
    assert second.secrets == [] and second.certificates == []
    assert first.service_principal is not None and first.service_principal.id == "sp-1"
    assert third.service_principal is not None and third.service_principal.id == "sp-3"
    assert result.missing_service_principals == ["Orphan"]


def test_bundle_contents(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    bundle = collector.collect(selection("app-1")).bundles[0]

    assert bundle.backup_date == CAPTURED_AT
    assert [secret.display_name for secret in bundle.secrets] == ["deploy"]
    assert [cert.display_name for cert in bundle.certificates] == ["CN=payroll"]
    assert bundle.secrets[0] is not bundle.service_principal.password_credentials[0]
    assert bundle.sync_job is not None and bundle.sync_job.template_id == "scim"
    assert bundle.sync_template is not None and bundle.sync_template.factory_tag == "scim"
    assert bundle.app_role_assignments[0].principal_display_name == "Adele"


def test_certificate_keys_come_from_the_single_principal_read(
    directory: FakeGraph, collector: EntityGraphCollector
) -> None:
    bundle = collector.collect(selection("app-1")).bundles[0]

    assert bundle.certificates[0].key == "TUlJQw=="
    request = directory.calls("GET", "/v1.0/servicePrincipals/sp-1")[0]
    assert request.url.params["$select"] == "keyCredentials"


def test_listed_certificates_are_kept_when_the_key_read_fails(
    directory: FakeGraph, collector: EntityGraphCollector
) -> None:
    directory.add("GET", "/v1.0/servicePrincipals/sp-1", lambda request: graph_error(403, "denied"))

    result = collector.collect(selection("app-1"))

    assert result.failures == []
    certificate = result.bundles[0].certificates[0]
    assert certificate.display_name == "CN=payroll"
    assert certificate.key is None


def test_principal_without_certificates_skips_the_key_read(
    directory: FakeGraph, collector: EntityGraphCollector
) -> None:
    collector.collect(selection("app-3"))

    assert directory.calls("GET", "/v1.0/servicePrincipals/sp-3") == []


def test_full_registration_is_refetched_with_backup_fields(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    bundle = collector.collect(selection("app-3")).bundles[0]

    assert bundle.application.web is not None
    assert bundle.application.web.redirect_uris == ["https://expenses.contoso.com/signin"]
    request = directory.calls("GET", "/v1.0/applications")[0]
    selected = request.url.params["$select"].split(",")
    assert {"requiredResourceAccess", "api", "appRoles", "optionalClaims", "parentalControlSettings"} <= set(selected)


def test_null_credentials_become_empty_lists_and_sync_errors_are_swallowed(
    directory: FakeGraph, collector: EntityGraphCollector
) -> None:
    bundle = collector.collect(selection("app-3")).bundles[0]

    assert bundle.secrets == []
    assert bundle.certificates == []
    assert bundle.sync_job is None
    assert bundle.sync_template is None


def test_missing_synchronization_is_not_reported_as_an_error(
    directory: FakeGraph, collector: EntityGraphCollector, audit_store: InMemoryAuditStore
) -> None:
    collector.collect(selection("app-3"))

    assert [event.message for event in audit_store.list() if event.level == "ERROR"] == []


def test_one_failing_application_does_not_stop_the_batch(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    def applications(request: httpx.Request) -> httpx.Response:
        if filter_app_id(request) == "app-1":
            return graph_error(400, "Invalid filter clause")
        return listing(APPLICATIONS)(request)

    directory.add("GET", "/v1.0/applications", applications)
    messages: List[str] = []

    result = collector.collect(selection("app-1", "app-3", "gone"), progress=messages.append)

    assert [bundle.application.app_id for bundle in result.bundles] == ["app-3"]
    assert [failure.app_id for failure in result.failures] == ["app-1", "gone"]
    assert "Invalid filter clause" in result.failures[0].message
    assert "no longer exists" in result.failures[1].message
    assert "Backed up 2 of 3 applications" in messages
    assert result.summary() == "Backed up 1 applications, 2 failed"


def test_progress_reports_each_application(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    messages: List[str] = []

    collector.collect(selection("app-1", "app-2"), progress=messages.append)

    assert messages == [
        "Backed up 1 of 2 applications",
        "No service principal found for Orphan",
        "Backed up 2 of 2 applications",
    ]


def test_cancel_stops_before_the_next_application(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    cancel = threading.Event()
    cancel.set()

    result = collector.collect(selection("app-1", "app-3"), cancel=cancel)

    assert result.cancelled
    assert result.bundles == []
    assert directory.requests == []


def test_select_applications_keeps_requested_order(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    selected = collector.select_applications(["app-3", "app-1"])

    assert [app.app_id for app in selected] == ["app-3", "app-1"]
    listing_request = directory.calls("GET", "/v1.0/applications")[0]
    assert listing_request.url.params["$orderby"] == "displayName"
    assert listing_request.headers["ConsistencyLevel"] == "eventual"


def test_select_applications_rejects_unknown_ids(directory: FakeGraph, collector: EntityGraphCollector) -> None:
    with pytest.raises(ApplicationNotFoundError, match="not-there"):
        collector.select_applications(["app-1", "not-there"])
