from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from entra_backup.audit import JsonAuditLogger
from entra_backup.config import BackupToolConfig
from entra_backup.errors import BackupToolError
from entra_backup.tenant_manager import TenantManager


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up and restore Entra application registrations")
    parser.add_argument("--config", required=True, help="Path to tenant configuration YAML")
    parser.add_argument("--tenant-id", help="Tenant ID to target")
    parser.add_argument(
        "--operation",
        required=True,
        choices=["list-applications", "backup", "restore", "inspect"],
        help="Operation to run",
    )
    parser.add_argument(
        "--app-id",
        action="append",
        default=[],
        help="Client id of an application to back up (repeatable; default: all applications)",
    )
    parser.add_argument("--output", help="Backup file to write (default: <backup_directory>/applications_<timestamp>.json)")
    parser.add_argument("--input", help="Backup file to restore or inspect")
    parser.add_argument("--workers", type=int, help="Applications restored in parallel")
    return parser.parse_args(argv)


def _progress(message: str) -> None:
    print(message, file=sys.stderr)


def _run_cancellable(task: Callable[[threading.Event], Any]) -> Any:
    """Run ``task`` in a worker thread; Ctrl+C stops it after the current application."""
    cancel = threading.Event()
    outcome: dict = {}

    def target() -> None:
        try:
            outcome["result"] = task(cancel)
        except BaseException as exc:  # noqa: BLE001
            outcome["error"] = exc

    worker = threading.Thread(target=target, name="entra-backup", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.5)
        except KeyboardInterrupt:
            _progress("Cancelling after the current application...")
            cancel.set()
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    config = BackupToolConfig.load(Path(args.config))
    manager = TenantManager(config, audit_logger=JsonAuditLogger())

    if args.operation != "inspect" and not args.tenant_id:
        raise SystemExit("--tenant-id is required for this operation")
    if args.operation in ("restore", "inspect") and not args.input:
        raise SystemExit("--input is required to restore or inspect a backup")

    try:
        if args.operation == "list-applications":
            applications = manager.list_applications(args.tenant_id)
            result: Any = [
                {"appId": app.app_id, "displayName": app.display_name, "signInAudience": app.sign_in_audience}
                for app in applications
            ]
        elif args.operation == "backup":
            result = _run_cancellable(
                lambda cancel: manager.backup(
                    args.tenant_id,
                    app_ids=args.app_id,
                    path=args.output,
                    progress=_progress,
                    cancel=cancel,
                ).to_dict()
            )
        elif args.operation == "restore":
            result = _run_cancellable(
                lambda cancel: manager.restore(
                    args.tenant_id,
                    args.input,
                    progress=_progress,
                    cancel=cancel,
                    workers=args.workers,
                ).to_dict()
            )
        elif args.operation == "inspect":
            result = manager.inspect(args.input, tenant_id=args.tenant_id)
        else:
            raise SystemExit(f"Unsupported operation: {args.operation}")
    except (BackupToolError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2))
    if args.operation == "restore" and (result["failed"] or result["partial"]):
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
