"""Reading and writing backup files.

A backup file is a JSON array of bundle objects using Graph's camelCase
property names. Null values are left out at every depth, and each bundle
carries ``schemaVersion`` so that a reader can refuse files written by a newer
format instead of misreading them.
"""
from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Sequence, Set, Union
from uuid import UUID

from pydantic import BaseModel, ValidationError

from .errors import BackupFormatError
from .models import SCHEMA_VERSION, BackupBundle

logger = logging.getLogger(__name__)


def default_file_name(prefix: str = "applications", now: Optional[datetime] = None) -> str:
    timestamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{timestamp}.json"


def to_document(value: Any) -> Any:
    """Convert models and containers into JSON-ready data.

    ``None`` values are dropped from objects and arrays. A container that is
    reached again while it is still being encoded is dropped as well, so
    self-referencing payloads serialize instead of recursing forever.
    """
    return _encode(value, set())


def _encode(value: Any, ancestors: Set[int]) -> Any:
    if isinstance(value, (BaseModel, dict, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in ancestors:
            logger.debug("Dropping cyclic reference to %s", type(value).__name__)
            return None
        ancestors.add(marker)
        try:
            if isinstance(value, BaseModel):
                return _encode_mapping(_model_items(value), ancestors)
            if isinstance(value, dict):
                return _encode_mapping(value.items(), ancestors)
            encoded = (_encode(item, ancestors) for item in value)
            return [item for item in encoded if item is not None]
        finally:
            ancestors.discard(marker)

    if isinstance(value, datetime):
        if value.tzinfo is not None and value.utcoffset() == timezone.utc.utcoffset(None):
            return value.replace(tzinfo=None).isoformat() + "Z"
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, bytes):
        raise TypeError("Binary values must be base64 encoded before they are stored")
    return value


def _encode_mapping(items: Any, ancestors: Set[int]) -> dict:
    document = {}
    for key, item in items:
        encoded = _encode(item, ancestors)
        if encoded is not None:
            document[str(key)] = encoded
    return document


def _model_items(model: BaseModel):
    fields = type(model).model_fields
    for name, value in model:
        info = fields.get(name)
        yield (info.alias or name) if info is not None else name, value


class BackupStore:
    """Persists bundles to a single JSON file and loads them back."""

    def __init__(self, indent: int = 2):
        self.indent = indent

    def write(self, bundles: Sequence[BackupBundle], path: Union[str, Path]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        document = [to_document(bundle) for bundle in bundles]
        text = json.dumps(document, indent=self.indent, ensure_ascii=False)

        # Write next to the target and swap it in so a crash never leaves a
        # truncated backup behind.
        handle, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(text)
                stream.write("\n")
                stream.flush()
                os.fsync(stream.fileno())
            os.replace(temp_name, target)
        except BaseException:
            if os.path.exists(temp_name):
                os.unlink(temp_name)
            raise

        logger.info("Wrote %s bundles to %s", len(bundles), target)
        return target

    def read(self, path: Union[str, Path]) -> List[BackupBundle]:
        source = Path(path)
        try:
            with source.open("r", encoding="utf-8") as stream:
                document = json.load(stream)
        except FileNotFoundError as exc:
            raise BackupFormatError(f"Backup file not found: {source}") from exc
        except (OSError, ValueError) as exc:
            raise BackupFormatError(f"Error loading backup {source}: {exc}") from exc

        if document is None:
            return []
        if not isinstance(document, list):
            raise BackupFormatError(f"Backup {source} must contain a JSON array of applications")

        bundles: List[BackupBundle] = []
        for position, entry in enumerate(document):
            bundles.append(self._load_bundle(entry, position, source))
        logger.info("Read %s bundles from %s", len(bundles), source)
        return bundles

    @staticmethod
    def _load_bundle(entry: Any, position: int, source: Path) -> BackupBundle:
        if not isinstance(entry, dict):
            raise BackupFormatError(f"Entry {position} in {source} is not an object")

        version = entry.get("schemaVersion", SCHEMA_VERSION)
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise BackupFormatError(
                f"Entry {position} in {source} uses schema version {version}; "
                f"this tool reads up to version {SCHEMA_VERSION}"
            )

        try:
            return BackupBundle.model_validate(entry)
        except ValidationError as exc:
            raise BackupFormatError(f"Entry {position} in {source} is not a valid backup: {exc}") from exc
