from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .audit import JsonAuditLogger
from .errors import NothingToRestoreError
from .models import (
    ApplicationRegistration,
    BackupBundle,
    KeyCredential,
    PasswordCredential,
    ServicePrincipal,
)
from .operations import DirectoryOperations
from .reporting import ProgressCallback, format_resource_access, notify
from .resolver import DirectoryNameResolver
from .store import to_document

logger = logging.getLogger(__name__)

# Registration properties that can be sent on create. Everything else is
# either server-assigned or tied to the source tenant.
RESTORABLE_APPLICATION_FIELDS = (
    "display_name",
    "sign_in_audience",
    "description",
    "notes",
    "api",
    "app_roles",
    "info",
    "is_fallback_public_client",
    "is_device_only_auth_supported",
    "group_membership_claims",
    "identifier_uris",
    "required_resource_access",
    "web",
    "spa",
    "public_client",
    "optional_claims",
    "parental_control_settings",
    "tags",
    "service_principal_lock_configuration",
)

RESTORABLE_SERVICE_PRINCIPAL_FIELDS = (
    "app_role_assignment_required",
    "description",
    "preferred_single_sign_on_mode",
    "login_url",
    "logout_url",
    "homepage",
    "saml_single_sign_on_settings",
    "notification_email_addresses",
    "tags",
)

# Read-only sub-properties Graph rejects on create.
_READ_ONLY_SUBFIELDS = {
    "info": ("logoUrl",),
    "web": ("redirectUriSettings",),
}


class RestoreStep(str, enum.Enum):
    CREATE_REGISTRATION = "create_registration"
    WAIT_PROPAGATION = "wait_propagation"
    CREATE_SERVICE_PRINCIPAL = "create_service_principal"
    RESTORE_CREDENTIALS = "restore_credentials"
    DONE = "done"


class RestoreStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BundleOutcome:
    display_name: str
    source_app_id: Optional[str]
    status: RestoreStatus = RestoreStatus.FAILED
    step: RestoreStep = RestoreStep.CREATE_REGISTRATION
    new_app_id: Optional[str] = None
    new_object_id: Optional[str] = None
    new_service_principal_id: Optional[str] = None
    secrets_restored: int = 0
    certificates_restored: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "sourceAppId": self.source_app_id,
            "status": self.status.value,
            "step": self.step.value,
            "newAppId": self.new_app_id,
            "newObjectId": self.new_object_id,
            "newServicePrincipalId": self.new_service_principal_id,
            "secretsRestored": self.secrets_restored,
            "certificatesRestored": self.certificates_restored,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


class RestoreReport:
    """Aggregate result of a restore batch. Safe to update from worker threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._outcomes: List[Tuple[int, BundleOutcome]] = []
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def record(self, index: int, outcome: BundleOutcome) -> None:
        with self._lock:
            self._outcomes.append((index, outcome))
            self.errors.extend(outcome.errors)
            self.warnings.extend(outcome.warnings)

    @property
    def outcomes(self) -> List[BundleOutcome]:
        with self._lock:
            return [outcome for _, outcome in sorted(self._outcomes, key=lambda pair: pair[0])]

    def _count(self, status: RestoreStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status is status)

    @property
    def succeeded(self) -> int:
        return self._count(RestoreStatus.SUCCEEDED)

    @property
    def partial(self) -> int:
        return self._count(RestoreStatus.PARTIAL)

    @property
    def failed(self) -> int:
        return self._count(RestoreStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(RestoreStatus.SKIPPED)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def summary(self) -> str:
        text = (
            f"Restored {self.succeeded + self.partial} of {self.total} applications: "
            f"{self.succeeded} succeeded, {self.partial} partial, {self.failed} failed"
        )
        if self.skipped:
            text += f", {self.skipped} skipped"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "partial": self.partial,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


class RestoreOrchestrator:
    """Recreates applications from backup bundles.

    Each bundle goes through create registration, a propagation wait, create
    service principal and credential restore, in that order. A failed
    registration fails the bundle. A failed service principal leaves the new
    registration in place and marks the bundle partial. Credentials are
    restored one at a time and a failed credential only adds an error.

    With ``max_workers > 1`` bundles run on a thread pool. Cancellation is
    checked before a bundle starts, never in the middle of one.
    """

    def __init__(
        self,
        operations: DirectoryOperations,
        propagation_delay: float = 2.0,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        resolver: Optional[DirectoryNameResolver] = None,
        audit: Optional[JsonAuditLogger] = None,
    ):
        if propagation_delay < 0:
            raise ValueError("propagation_delay must not be negative")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.operations = operations
        self.propagation_delay = propagation_delay
        self.max_workers = max_workers
        self.sleep = sleep
        self.resolver = resolver
        self.audit = audit or operations.context.audit

    def restore(
        self,
        bundles: Sequence[BackupBundle],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> RestoreReport:
        bundles = list(bundles)
        if not bundles:
            raise NothingToRestoreError()

        report = RestoreReport()
        total = len(bundles)
        finished = [0]
        finished_lock = threading.Lock()
        notify(progress, f"Restoring {total} applications...")
        self.audit.info("restore_started", bundles=total, workers=self.max_workers)

        def run(index: int, bundle: BackupBundle) -> None:
            if cancel is not None and cancel.is_set():
                outcome = BundleOutcome(bundle.display_name, bundle.application.app_id, status=RestoreStatus.SKIPPED)
                outcome.warnings.append(f"{bundle.display_name}: skipped, restore was cancelled")
            else:
                outcome = self.restore_one(bundle, progress)
            report.record(index, outcome)
            with finished_lock:
                finished[0] += 1
                done = finished[0]
            notify(progress, f"Restored {done} of {total} applications")

        if self.max_workers == 1:
            for index, bundle in enumerate(bundles):
                run(index, bundle)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="restore") as pool:
                futures = [pool.submit(run, index, bundle) for index, bundle in enumerate(bundles)]
                for future in futures:
                    future.result()

        self.audit.info(
            "restore_completed",
            succeeded=report.succeeded,
            partial=report.partial,
            failed=report.failed,
            skipped=report.skipped,
            errors=len(report.errors),
        )
        notify(progress, report.summary())
        return report

    def restore_one(self, bundle: BackupBundle, progress: Optional[ProgressCallback] = None) -> BundleOutcome:
        """Run the full step sequence for one bundle. Never raises."""
        outcome = BundleOutcome(bundle.display_name, bundle.application.app_id)
        try:
            self._restore(bundle, outcome, progress)
        except Exception as exc:  # noqa: BLE001
            # Anything unexpected past registration create still leaves a live app.
            outcome.status = RestoreStatus.FAILED if outcome.new_object_id is None else RestoreStatus.PARTIAL
            outcome.errors.append(f"{outcome.display_name}: unexpected error during {outcome.step.value}: {exc}")
            logger.exception("Restore of %s failed unexpectedly", outcome.display_name)
        self.audit.info(
            "application_restore_finished",
            display_name=outcome.display_name,
            source_app_id=outcome.source_app_id,
            new_app_id=outcome.new_app_id,
            status=outcome.status.value,
            step=outcome.step.value,
        )
        return outcome

    def _restore(self, bundle: BackupBundle, outcome: BundleOutcome, progress: Optional[ProgressCallback]) -> None:
        name = outcome.display_name
        application = bundle.application

        outcome.step = RestoreStep.CREATE_REGISTRATION
        payload, deferred_uris = self.registration_payload(application)
        notify(progress, self._status_text(bundle))
        try:
            created = self.operations.create_application(payload)
        except Exception as exc:  # noqa: BLE001
            outcome.status = RestoreStatus.FAILED
            outcome.errors.append(f"{name}: failed to create application registration: {exc}")
            self.audit.error("registration_create_failed", display_name=name, error=str(exc))
            return
        outcome.new_app_id = created.app_id
        outcome.new_object_id = created.id
        self.audit.info("registration_created", display_name=name, app_id=created.app_id, object_id=created.id)

        if not created.app_id:
            outcome.status = RestoreStatus.PARTIAL
            outcome.errors.append(f"{name}: created registration returned no client id")
            return

        outcome.step = RestoreStep.WAIT_PROPAGATION
        if self.propagation_delay > 0:
            self.sleep(self.propagation_delay)

        if deferred_uris and created.id:
            self._restore_identifier_uris(created, payload.get("identifierUris", []), deferred_uris, outcome)

        outcome.step = RestoreStep.CREATE_SERVICE_PRINCIPAL
        if bundle.service_principal is None:
            outcome.warnings.append(
                f"{name}: backup has no service principal; creating one with default settings"
            )
        try:
            principal = self.operations.create_service_principal(
                self.service_principal_payload(bundle.service_principal, created.app_id)
            )
        except Exception as exc:  # noqa: BLE001
            outcome.status = RestoreStatus.PARTIAL
            outcome.errors.append(
                f"{name}: registration restored as {created.app_id} but service principal creation failed: {exc}"
            )
            self.audit.error("service_principal_create_failed", display_name=name, app_id=created.app_id, error=str(exc))
            return
        outcome.new_service_principal_id = principal.id
        self.audit.info("service_principal_created", display_name=name, service_principal_id=principal.id)

        outcome.step = RestoreStep.RESTORE_CREDENTIALS
        if principal.id:
            self._restore_secrets(principal.id, bundle.secrets, outcome)
            self._restore_certificates(principal.id, bundle.certificates, outcome)
        elif bundle.secrets or bundle.certificates:
            outcome.errors.append(f"{name}: service principal id missing, credentials not restored")

        outcome.step = RestoreStep.DONE
        outcome.status = RestoreStatus.SUCCEEDED

    def _status_text(self, bundle: BackupBundle) -> str:
        text = f"Restoring {bundle.display_name}"
        if self.resolver is not None and bundle.application.required_resource_access:
            resources = format_resource_access(bundle.application.required_resource_access, self.resolver)
            text += f" (requires access to {resources})"
        return text

    # -- payloads ----------------------------------------------------------

    @staticmethod
    def registration_payload(application: ApplicationRegistration) -> Tuple[Dict[str, Any], List[str]]:
        """Create body for a registration plus identifier URIs to apply later.

        URIs that embed the source client id (``api://<appId>``) are only valid
        on the app that owns that id, so they are rewritten for the new app
        once it exists.
        """
        fields = type(application).model_fields
        payload: Dict[str, Any] = {}
        for name in RESTORABLE_APPLICATION_FIELDS:
            value = to_document(getattr(application, name))
            if value is None:
                continue
            alias = fields[name].alias or name
            for read_only in _READ_ONLY_SUBFIELDS.get(alias, ()):
                if isinstance(value, dict):
                    value.pop(read_only, None)
            payload[alias] = value

        deferred: List[str] = []
        source_app_id = (application.app_id or "").lower()
        if source_app_id and payload.get("identifierUris"):
            kept = []
            for uri in payload["identifierUris"]:
                (deferred if source_app_id in uri.lower() else kept).append(uri)
            payload["identifierUris"] = kept
        return payload, deferred

    @staticmethod
    def service_principal_payload(source: Optional[ServicePrincipal], new_app_id: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"appId": new_app_id, "accountEnabled": True}
        if source is None:
            return payload
        if source.account_enabled is not None:
            payload["accountEnabled"] = source.account_enabled
        fields = type(source).model_fields
        for name in RESTORABLE_SERVICE_PRINCIPAL_FIELDS:
            value = to_document(getattr(source, name))
            if value is None or value == []:
                continue
            payload[fields[name].alias or name] = value
        return payload

    # -- sub-steps ---------------------------------------------------------

    def _restore_identifier_uris(
        self,
        created: ApplicationRegistration,
        kept: List[str],
        deferred: List[str],
        outcome: BundleOutcome,
    ) -> None:
        source_app_id = outcome.source_app_id or ""
        rewritten = [_replace_case_insensitive(uri, source_app_id, created.app_id or "") for uri in deferred]
        try:
            self.operations.update_application(created.id or "", {"identifierUris": kept + rewritten})
        except Exception as exc:  # noqa: BLE001
            outcome.errors.append(
                f"{outcome.display_name}: failed to set identifier URIs {', '.join(rewritten)}: {exc}"
            )
            return
        self.audit.info("identifier_uris_updated", display_name=outcome.display_name, uris=rewritten)

    def _restore_secrets(
        self, service_principal_id: str, secrets: Sequence[PasswordCredential], outcome: BundleOutcome
    ) -> None:
        for secret in secrets:
            label = secret.display_name or secret.key_id or "unnamed secret"
            body = to_document(
                {
                    "displayName": secret.display_name,
                    "startDateTime": secret.start_date_time,
                    "endDateTime": secret.end_date_time,
                }
            )
            try:
                self.operations.add_password(service_principal_id, body)
            except Exception as exc:  # noqa: BLE001
                outcome.errors.append(f"{outcome.display_name}: failed to add secret '{label}': {exc}")
                self.audit.warning("secret_restore_failed", display_name=outcome.display_name, secret=label, error=str(exc))
                continue
            outcome.secrets_restored += 1
            self.audit.info("secret_restored", display_name=outcome.display_name, secret=label)

    def _restore_certificates(
        self, service_principal_id: str, certificates: Sequence[KeyCredential], outcome: BundleOutcome
    ) -> None:
        # addKey requires proof signed by an existing key, which a fresh
        # principal does not have, so keys go in through PATCH. Each PATCH
        # replaces the collection and therefore resends the keys added so far.
        restored: List[Dict[str, Any]] = []
        for certificate in certificates:
            label = certificate.display_name or certificate.key_id or "unnamed certificate"
            if not certificate.key:
                outcome.errors.append(
                    f"{outcome.display_name}: certificate '{label}' has no key material in the backup"
                )
                continue
            document = to_document(
                {
                    "type": certificate.type,
                    "usage": certificate.usage,
                    "key": certificate.key,
                    "displayName": certificate.display_name,
                    "startDateTime": certificate.start_date_time,
                    "endDateTime": certificate.end_date_time,
                    "customKeyIdentifier": certificate.custom_key_identifier,
                }
            )
            try:
                self.operations.update_service_principal(service_principal_id, {"keyCredentials": restored + [document]})
            except Exception as exc:  # noqa: BLE001
                outcome.errors.append(f"{outcome.display_name}: failed to add certificate '{label}': {exc}")
                self.audit.warning(
                    "certificate_restore_failed", display_name=outcome.display_name, certificate=label, error=str(exc)
                )
                continue
            restored.append(document)
            outcome.certificates_restored += 1
            self.audit.info("certificate_restored", display_name=outcome.display_name, certificate=label)


def _replace_case_insensitive(text: str, old: str, new: str) -> str:
    if not old:
        return text
    start = text.lower().find(old.lower())
    if start < 0:
        return text
    return text[:start] + new + text[start + len(old):]
