from __future__ import annotations

import os
import uuid
from pathlib import Path
from typing import Any, List, Optional, Tuple

from flask import Flask, jsonify, request
from werkzeug.utils import secure_filename

from entra_backup.audit import InMemoryAuditStore, JsonAuditLogger
from entra_backup.config import BackupToolConfig
from entra_backup.errors import BackupFormatError, BackupToolError, NotFoundError, NothingToRestoreError
from entra_backup.store import default_file_name
from entra_backup.tenant_manager import TenantManager


def create_app(
    config_path: str | os.PathLike[str] = "config/tenants.yaml",
    manager: Optional[TenantManager] = None,
    audit_store: Optional[InMemoryAuditStore] = None,
) -> Flask:
    audit_store = audit_store or InMemoryAuditStore()
    if manager is None:
        config = BackupToolConfig.load(Path(config_path))
        manager = TenantManager(config, audit_logger=JsonAuditLogger(store=audit_store))
    backup_directory = Path(manager.settings.backup_directory)

    app = Flask(__name__)
    app.config["TENANT_MANAGER"] = manager
    app.config["AUDIT_STORE"] = audit_store

    def error(message: str, status: int) -> Tuple[Any, int]:
        return jsonify({"error": message}), status

    def backup_path(file_name: str) -> Path:
        safe_name = secure_filename(file_name)
        if not safe_name:
            raise ValueError("A valid backup file name is required")
        if not safe_name.endswith(".json"):
            safe_name += ".json"
        return backup_directory / safe_name

    def read_limit(default: int = 100) -> int:
        limit_param = request.args.get("limit")
        try:
            return int(limit_param) if limit_param else default
        except ValueError:
            return default

    def read_workers(value: Any) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ValueError("workers must be a positive integer")
        try:
            workers = int(value)
        except ValueError:
            raise ValueError("workers must be a positive integer") from None
        if workers < 1:
            raise ValueError("workers must be a positive integer")
        return workers

    @app.get("/")
    @app.get("/tenants")
    def tenants():
        return jsonify(
            {
                "tenants": [
                    {"tenantId": tenant.tenant_id, "displayName": tenant.display_name}
                    for tenant in manager.config.tenants
                ]
            }
        )

    @app.get("/tenants/<tenant_id>/applications")
    def applications(tenant_id: str):
        correlation_id = str(uuid.uuid4())
        try:
            apps = manager.list_applications(tenant_id, correlation_id=correlation_id)
        except NotFoundError as exc:
            return error(str(exc), 404)
        except BackupToolError as exc:
            return error(f"Listing applications failed: {exc}", 502)
        return jsonify(
            {
                "correlationId": correlation_id,
                "applications": [
                    app.model_dump(by_alias=True, include={"id", "app_id", "display_name", "sign_in_audience"})
                    for app in apps
                ],
            }
        )

    @app.post("/tenants/<tenant_id>/backup")
    def backup(tenant_id: str):
        body = request.get_json(silent=True) or {}
        app_ids: List[str] = body.get("appIds") or []
        messages: List[str] = []
        try:
            target = backup_path(body.get("fileName") or default_file_name())
            result = manager.backup(
                tenant_id,
                app_ids=app_ids,
                path=target,
                progress=messages.append,
                correlation_id=str(uuid.uuid4()),
            )
        except NotFoundError as exc:
            return error(str(exc), 404)
        except ValueError as exc:
            return error(str(exc), 400)
        except BackupToolError as exc:
            return error(f"Backup failed: {exc}", 502)
        payload = result.to_dict()
        payload["fileName"] = result.path.name if result.path else None
        payload["progress"] = messages
        return jsonify(payload)

    @app.post("/tenants/<tenant_id>/restore")
    def restore(tenant_id: str):
        body = request.get_json(silent=True) or {}
        messages: List[str] = []
        try:
            source = backup_path(body.get("fileName") or "")
            report = manager.restore(
                tenant_id,
                source,
                progress=messages.append,
                workers=read_workers(body.get("workers")),
                correlation_id=str(uuid.uuid4()),
            )
        except NotFoundError as exc:
            return error(str(exc), 404)
        except NothingToRestoreError as exc:
            return error(str(exc), 400)
        except BackupFormatError as exc:
            return error(str(exc), 400)
        except ValueError as exc:
            return error(str(exc), 400)
        payload = report.to_dict()
        payload["progress"] = messages
        return jsonify(payload)

    @app.get("/backups")
    def backups():
        files = sorted(backup_directory.glob("*.json")) if backup_directory.exists() else []
        return jsonify({"backups": [path.name for path in files]})

    @app.get("/backups/<file_name>")
    def inspect_backup(file_name: str):
        try:
            descriptions = manager.inspect(backup_path(file_name), tenant_id=request.args.get("tenantId"))
        except NotFoundError as exc:
            return error(str(exc), 404)
        except BackupFormatError as exc:
            return error(str(exc), 404 if "not found" in str(exc) else 400)
        except ValueError as exc:
            return error(str(exc), 400)
        return jsonify({"fileName": file_name, "applications": descriptions})

    @app.get("/audit.json")
    def audit_json():
        limit = read_limit()
        events = audit_store.list(limit=limit, correlation_id=request.args.get("correlationId"))
        payload = [event.to_dict() for event in events]
        return jsonify({"events": payload, "count": len(payload)})

    return app


if __name__ == "__main__":
    app = create_app(os.getenv("ENTRA_BACKUP_CONFIG", "config/tenants.yaml"))
    app.run(host="127.0.0.1", port=int(os.getenv("PORT", 5000)))
