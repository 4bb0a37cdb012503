from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .audit import JsonAuditLogger
from .errors import ApplicationNotFoundError
from .models import (
    AppRoleAssignment,
    ApplicationRegistration,
    BackupBundle,
    KeyCredential,
    ServicePrincipal,
    SynchronizationJob,
    SynchronizationTemplate,
)
from .operations import DirectoryOperations
from .reporting import ProgressCallback, notify

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CollectionFailure:
    app_id: Optional[str]
    display_name: Optional[str]
    message: str

    def __str__(self) -> str:
        return f"{self.display_name or self.app_id}: {self.message}"


@dataclass
class CollectionResult:
    bundles: List[BackupBundle] = field(default_factory=list)
    failures: List[CollectionFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def missing_service_principals(self) -> List[str]:
        return [bundle.display_name for bundle in self.bundles if bundle.service_principal is None]

    def summary(self) -> str:
        text = f"Backed up {len(self.bundles)} applications"
        if self.failures:
            text += f", {len(self.failures)} failed"
        missing = len(self.missing_service_principals)
        if missing:
            text += f", {missing} without a service principal"
        if self.cancelled:
            text += " (cancelled)"
        return text


class EntityGraphCollector:
    """Builds one backup bundle per application.

    Each application is collected independently; a failed lookup is recorded
    and the batch carries on with the next one. Synchronization metadata and
    role assignments are optional and never fail a bundle.
    """

    def __init__(
        self,
        operations: DirectoryOperations,
        audit: Optional[JsonAuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.operations = operations
        self.audit = audit or operations.context.audit
        self.clock = clock

    def list_applications(self) -> List[ApplicationRegistration]:
        applications = self.operations.list_applications()
        self.audit.info("applications_listed", count=len(applications))
        return applications

    def select_applications(self, app_ids: Iterable[str]) -> List[ApplicationRegistration]:
        """Pick applications from the tenant listing, in the order requested."""
        wanted = list(dict.fromkeys(app_ids))
        by_app_id = {app.app_id: app for app in self.list_applications()}
        missing = [app_id for app_id in wanted if app_id not in by_app_id]
        if missing:
            raise ApplicationNotFoundError(missing)
        return [by_app_id[app_id] for app_id in wanted]

    def collect(
        self,
        applications: Sequence[ApplicationRegistration],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CollectionResult:
        result = CollectionResult()
        total = len(applications)

        for index, application in enumerate(applications, start=1):
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                self.audit.warning("backup_cancelled", processed=index - 1, total=total)
                break

            name = application.display_name or application.app_id
            self.audit.info("backing_up_application", app_id=application.app_id, display_name=name)
            try:
                bundle = self.collect_one(application)
            except Exception as exc:  # noqa: BLE001
                self.audit.error(
                    "application_backup_failed",
                    app_id=application.app_id,
                    display_name=name,
                    error=str(exc),
                )
                result.failures.append(CollectionFailure(application.app_id, name, str(exc)))
                notify(progress, f"Failed to back up {name}: {exc}")
                continue

            result.bundles.append(bundle)
            if bundle.service_principal is None:
                notify(progress, f"No service principal found for {name}")
            notify(progress, f"Backed up {index} of {total} applications")

        self.audit.info(
            "backup_collected",
            bundles=len(result.bundles),
            failures=len(result.failures),
            missing_service_principals=len(result.missing_service_principals),
        )
        return result

    def collect_one(self, application: ApplicationRegistration) -> BackupBundle:
        app_id = application.app_id
        if not app_id:
            raise ValueError("application has no client id")

        registration = self.operations.get_application_by_app_id(app_id)
        if registration is None:
            raise LookupError(f"application {app_id} no longer exists")

        principal = self.operations.get_service_principal_by_app_id(app_id)
        if principal is None:
            self.audit.warning(
                "service_principal_missing",
                app_id=app_id,
                display_name=registration.display_name,
            )
            return BackupBundle(application=registration, backup_date=self.clock())

        if principal.is_saml:
            self.audit.info(
                "saml_application_found",
                app_id=app_id,
                login_url=principal.login_url,
                certificates=len(principal.key_credentials or []),
                has_sso_settings=principal.saml_single_sign_on_settings is not None,
            )

        sync_job, sync_template = self._synchronization(principal.id)
        return BackupBundle(
            application=registration,
            service_principal=principal,
            secrets=[credential.model_copy(deep=True) for credential in principal.password_credentials or []],
            certificates=self._certificates(principal),
            sync_job=sync_job,
            sync_template=sync_template,
            app_role_assignments=self._assignments(principal.id),
            backup_date=self.clock(),
        )

    def _certificates(self, principal: ServicePrincipal) -> List[KeyCredential]:
        # Collection queries return keyCredentials without the public key;
        # only a single-object read carries it.
        listed = [credential.model_copy(deep=True) for credential in principal.key_credentials or []]
        if not principal.id or not listed:
            return listed
        try:
            return self.operations.get_service_principal_key_credentials(principal.id)
        except Exception as exc:  # noqa: BLE001
            self.audit.warning(
                "certificate_keys_unavailable",
                service_principal_id=principal.id,
                error=str(exc),
            )
            return listed

    def _synchronization(
        self, service_principal_id: Optional[str]
    ) -> Tuple[Optional[SynchronizationJob], Optional[SynchronizationTemplate]]:
        if not service_principal_id:
            return None, None
        job = template = None
        try:
            jobs = self.operations.list_synchronization_jobs(service_principal_id)
            job = SynchronizationJob.from_graph(jobs[0]) if jobs else None
        except Exception as exc:  # noqa: BLE001
            logger.debug("No synchronization job for %s: %s", service_principal_id, exc)
        try:
            templates = self.operations.list_synchronization_templates(service_principal_id)
            template = SynchronizationTemplate.from_graph(templates[0]) if templates else None
        except Exception as exc:  # noqa: BLE001
            logger.debug("No synchronization template for %s: %s", service_principal_id, exc)
        return job, template

    def _assignments(self, service_principal_id: Optional[str]) -> List[AppRoleAssignment]:
        if not service_principal_id:
            return []
        try:
            items = self.operations.list_app_role_assignments(service_principal_id)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Could not read role assignments for %s: %s", service_principal_id, exc)
            return []
        return [AppRoleAssignment.from_graph(item) for item in items]
