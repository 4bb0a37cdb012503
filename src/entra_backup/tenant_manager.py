from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import httpx

from .audit import JsonAuditLogger
from .auth import GraphAuthenticator, TokenProvider
from .collector import CollectionResult, EntityGraphCollector
from .config import BackupToolConfig, TenantConfig
from .errors import NothingToRestoreError, TenantNotFoundError
from .graph_client import GraphClient
from .models import ApplicationRegistration, BackupBundle
from .operations import DirectoryOperations, TenantExecutionContext
from .reporting import ProgressCallback, describe_bundles
from .resolver import DirectoryNameResolver
from .restore import RestoreOrchestrator, RestoreReport
from .store import BackupStore, default_file_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

AuthenticatorFactory = Callable[[TenantConfig, JsonAuditLogger], TokenProvider]


@dataclass
class BackupResult:
    path: Optional[Path]
    collection: CollectionResult
    correlation_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path) if self.path else None,
            "correlationId": self.correlation_id,
            "bundles": len(self.collection.bundles),
            "failures": [str(failure) for failure in self.collection.failures],
            "missingServicePrincipals": self.collection.missing_service_principals,
            "cancelled": self.collection.cancelled,
            "summary": self.collection.summary(),
        }


class TenantManager:
    """Entry point for backup and restore runs against configured tenants."""

    def __init__(
        self,
        config: BackupToolConfig,
        audit_logger: Optional[JsonAuditLogger] = None,
        authenticator_factory: AuthenticatorFactory = GraphAuthenticator,
        transport: Optional[httpx.BaseTransport] = None,
        store: Optional[BackupStore] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.settings = config.settings
        self.audit = audit_logger or JsonAuditLogger()
        self.authenticator_factory = authenticator_factory
        self.transport = transport
        self.store = store or BackupStore()
        self.sleep = sleep or time.sleep
        self._tenant_cache: Dict[str, TenantConfig] = {tenant.tenant_id: tenant for tenant in config.tenants}

    def get_tenant(self, tenant_id: str) -> TenantConfig:
        tenant = self._tenant_cache.get(tenant_id)
        if not tenant:
            raise TenantNotFoundError(f"Tenant {tenant_id} is not configured")
        return tenant

    def with_context(self, tenant_id: str, audit: Optional[JsonAuditLogger] = None) -> TenantExecutionContext:
        tenant = self.get_tenant(tenant_id)
        audit = audit or self.audit.bind(tenant_id=tenant.tenant_id)
        authenticator = self.authenticator_factory(tenant, audit)
        graph_client = GraphClient(
            tenant_config=tenant,
            authenticator=authenticator,
            audit_logger=audit,
            timeout=self.settings.request_timeout_seconds,
            max_retries=self.settings.max_retries,
            transport=self.transport,
            sleep=self.sleep,
        )
        return TenantExecutionContext(
            tenant_id=tenant.tenant_id, graph=graph_client, settings=self.settings, audit=audit
        )

    def run_operation(
        self,
        tenant_id: str,
        operation: Callable[[DirectoryOperations], T],
        correlation_id: Optional[str] = None,
    ) -> T:
        correlation_id = correlation_id or str(uuid.uuid4())
        audit = self.audit.bind(tenant_id=tenant_id, correlation_id=correlation_id)
        context = self.with_context(tenant_id, audit=audit)
        audit.info("operation_started")
        with context.graph:
            try:
                result = operation(DirectoryOperations(context))
            except Exception as exc:
                audit.error("operation_failed", error=str(exc))
                raise
        audit.info("operation_completed")
        return result

    def list_applications(self, tenant_id: str, correlation_id: Optional[str] = None) -> List[ApplicationRegistration]:
        return self.run_operation(
            tenant_id,
            lambda ops: EntityGraphCollector(ops).list_applications(),
            correlation_id=correlation_id,
        )

    def backup(
        self,
        tenant_id: str,
        app_ids: Optional[Sequence[str]] = None,
        path: Optional[Union[str, Path]] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None,
    ) -> BackupResult:
        """Back up the given applications (all of them when ``app_ids`` is empty)."""
        correlation_id = correlation_id or str(uuid.uuid4())
        target = Path(path) if path else self.settings.backup_directory / default_file_name()

        def operation(ops: DirectoryOperations) -> CollectionResult:
            collector = EntityGraphCollector(ops)
            if app_ids:
                applications = collector.select_applications(app_ids)
            else:
                applications = collector.list_applications()
            if not applications:
                raise ValueError("No applications selected for backup")
            return collector.collect(applications, progress=progress, cancel=cancel)

        collection = self.run_operation(tenant_id, operation, correlation_id=correlation_id)
        written: Optional[Path] = None
        if collection.bundles:
            written = self.store.write(collection.bundles, target)
            self.audit.info(
                "backup_saved",
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                path=str(written),
                bundles=len(collection.bundles),
            )
        if progress is not None:
            progress(collection.summary())
        return BackupResult(path=written, collection=collection, correlation_id=correlation_id)

    def load_backup(self, path: Union[str, Path]) -> List[BackupBundle]:
        return self.store.read(path)

    def restore(
        self,
        tenant_id: str,
        source: Union[str, Path, Sequence[BackupBundle]],
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
        workers: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> RestoreReport:
        bundles = self.load_backup(source) if isinstance(source, (str, Path)) else list(source)
        if not bundles:
            raise NothingToRestoreError()

        def operation(ops: DirectoryOperations) -> RestoreReport:
            orchestrator = RestoreOrchestrator(
                ops,
                propagation_delay=self.settings.propagation_delay_seconds,
                max_workers=workers or self.settings.restore_workers,
                sleep=self.sleep,
                resolver=DirectoryNameResolver(ops),
            )
            return orchestrator.restore(bundles, progress=progress, cancel=cancel)

        return self.run_operation(tenant_id, operation, correlation_id=correlation_id)

    def inspect(self, path: Union[str, Path], tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Describe a backup file; names are resolved against ``tenant_id`` when given."""
        bundles = self.load_backup(path)
        if tenant_id is None:
            return describe_bundles(bundles)
        return self.run_operation(tenant_id, lambda ops: describe_bundles(bundles, DirectoryNameResolver(ops)))
