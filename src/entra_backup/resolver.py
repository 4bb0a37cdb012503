from __future__ import annotations

import enum
import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from .errors import GraphRequestError
from .operations import DirectoryOperations

logger = logging.getLogger(__name__)


class NameKind(str, enum.Enum):
    USER = "user"
    GROUP = "group"
    APPLICATION = "application"


class DirectoryNameResolver:
    """Cached id -> display name lookups for reports and status text.

    Lookups never raise: an id that cannot be resolved is returned as its own
    display value. Deleted objects and denied lookups are cached that way;
    throttling and server errors are not, so the next call tries again.
    Entries live as long as the resolver unless ``ttl`` is given.
    """

    def __init__(
        self,
        operations: DirectoryOperations,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.operations = operations
        self.ttl = ttl
        self.clock = clock
        self._caches: Dict[NameKind, Dict[str, Tuple[str, float]]] = {kind: {} for kind in NameKind}
        self._lock = Lock()

    def resolve(self, kind: NameKind, object_id: Optional[str]) -> str:
        if not object_id:
            return ""
        kind = NameKind(kind)
        cached = self._cached(kind, object_id)
        if cached is not None:
            return cached

        try:
            display_name = self._lookup(kind, object_id)
        except GraphRequestError as exc:
            if exc.is_transient:
                # Throttled or unavailable: answer with the id but look again next time.
                logger.debug("Transient failure resolving %s %s: %s", kind.value, object_id, exc)
                return object_id
            if exc.is_not_found:
                logger.debug("%s %s no longer exists", kind.value, object_id)
            else:
                logger.debug("Could not resolve %s %s: %s", kind.value, object_id, exc)
            display_name = object_id
        with self._lock:
            self._caches[kind][object_id] = (display_name, self.clock())
        return display_name

    def user(self, user_id: Optional[str]) -> str:
        return self.resolve(NameKind.USER, user_id)

    def group(self, group_id: Optional[str]) -> str:
        return self.resolve(NameKind.GROUP, group_id)

    def application(self, app_id: Optional[str]) -> str:
        return self.resolve(NameKind.APPLICATION, app_id)

    def _cached(self, kind: NameKind, object_id: str) -> Optional[str]:
        with self._lock:
            entry = self._caches[kind].get(object_id)
            if entry is None:
                return None
            display_name, stored_at = entry
            if self.ttl is not None and self.clock() - stored_at > self.ttl:
                del self._caches[kind][object_id]
                return None
            return display_name

    def _lookup(self, kind: NameKind, object_id: str) -> str:
        try:
            if kind is NameKind.USER:
                display_name = self.operations.get_user(object_id).get("displayName")
            elif kind is NameKind.GROUP:
                display_name = self.operations.get_group(object_id).get("displayName")
            else:
                # First-party resources such as Microsoft Graph only exist in a
                # tenant as service principals, so client ids resolve there.
                principal = self.operations.get_service_principal_by_app_id(object_id, select=("displayName",))
                display_name = principal.display_name if principal else None
        except GraphRequestError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("Could not resolve %s %s: %s", kind.value, object_id, exc)
            return object_id
        return display_name or object_id
