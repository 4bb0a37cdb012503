from __future__ import annotations

import json
from typing import Optional


class BackupToolError(Exception):
    """Base class for errors raised by the backup/restore pipeline."""


class GraphRequestError(BackupToolError):
    """Raised when a Graph call returns a non-2xx status."""

    def __init__(self, status_code: int, body: str, url: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.url = url
        super().__init__(f"HTTP {status_code}: {self.error_message}")

    @property
    def error_message(self) -> str:
        # Graph wraps failures as {"error": {"code": ..., "message": ...}}
        try:
            payload = json.loads(self.body)
            error = payload.get("error") or {}
            message = error.get("message")
            code = error.get("code")
            if message and code:
                return f"{code}: {message}"
            if message:
                return str(message)
        except (ValueError, AttributeError):
            pass
        return self.body[:200]

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_transient(self) -> bool:
        return self.status_code in (429, 500, 502, 503, 504)


class ListingError(BackupToolError):
    """A paginated listing could not be completed."""


class BackupFormatError(BackupToolError):
    """A backup file could not be read or does not match the expected layout."""


class NothingToRestoreError(BackupToolError):
    """Raised when a restore is requested for an empty set of bundles."""

    def __init__(self, message: str = "Nothing to restore: the backup contains no applications"):
        super().__init__(message)


class NotFoundError(BackupToolError):
    """A tenant or application named by the caller does not exist."""


class TenantNotFoundError(NotFoundError):
    pass


class ApplicationNotFoundError(NotFoundError):
    def __init__(self, app_ids):
        self.app_ids = list(app_ids)
        super().__init__(f"Applications not found in tenant: {', '.join(self.app_ids)}")
