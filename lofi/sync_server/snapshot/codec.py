"""
Snapshot document codec.

A snapshot is the whole dataset of one account as a single JSON document:

    {
        "books": [...], "characters": [...], "chapters": [...],
        "ideas": [...], "timelineEvents": [...], "wishlistItems": [...],
        "images": [...],
        "connections": [...], "chapterIllustrations": [...]   # optional
    }

Records are written with canonical snake_case column names. Documents
produced by the superseded local-only database use camelCase names and
hold composite values as real JSON lists; decode() accepts both and
normalizes every record through the collection's field-mapping table.

Invariants:
    - decode() validates the whole document before returning; nothing is
      written anywhere on failure
    - Required collections must be present lists; optional ones default to []
    - Decoded records only carry declared columns, with defaults applied
    - Snapshots are immutable once built

How to change safely:
    - New collections must be optional (older backups lack them)
    - Keep BackupMetadata keys stable; other devices read backup-meta.json
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from ..errors import ValidationError
from ..store.canonical_store import CanonicalStore
from ..store.schema import (
    BOOKS,
    COLLECTIONS,
    COUNTED_KEYS,
    Collection,
    Column,
    ColumnKind,
)

logger = logging.getLogger(__name__)

METADATA_VERSION = 2

_MISSING = object()


def format_timestamp(when: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a trailing Z."""
    return when.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Snapshot:
    """The full dataset of one account.

    Attributes:
        collections: Collection key -> records (canonical column names)
    """

    collections: Mapping[str, tuple[dict[str, Any], ...]]

    def __post_init__(self) -> None:
        copied = {
            c.key: tuple(dict(r) for r in self.collections.get(c.key, ())) for c in COLLECTIONS
        }
        object.__setattr__(self, "collections", MappingProxyType(copied))

    def records(self, key: str) -> list[dict[str, Any]]:
        """Copies of one collection's records."""
        return [dict(r) for r in self.collections[key]]

    @property
    def book_count(self) -> int:
        return len(self.collections[BOOKS.key])

    @property
    def total_records(self) -> int:
        return sum(len(self.collections[key]) for key in COUNTED_KEYS)

    def counts(self) -> dict[str, int]:
        return {key: len(records) for key, records in self.collections.items()}

    def to_document(self) -> dict[str, list[dict[str, Any]]]:
        return {key: [dict(r) for r in records] for key, records in self.collections.items()}


@dataclass(frozen=True)
class BackupMetadata:
    """Summary written next to the snapshots as backup-meta.json.

    Attributes:
        timestamp: When the backup was taken (ISO-8601)
        version: Document format version
        book_count: Number of books in the snapshot
        total_records: Books, characters, chapters, ideas, timeline events
            and wish-list items
        owner_identity: Account the snapshot belongs to
    """

    timestamp: str
    version: int = METADATA_VERSION
    book_count: int = 0
    total_records: int = 0
    owner_identity: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "version": self.version,
            "bookCount": self.book_count,
            "totalRecords": self.total_records,
            "ownerIdentity": self.owner_identity,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BackupMetadata:
        """Parse metadata, accepting the legacy totalSize/userEmail keys."""
        if not isinstance(data, Mapping):
            raise ValidationError("Backup metadata must be a JSON object")
        try:
            return cls(
                timestamp=str(data["timestamp"]),
                version=int(data.get("version", 1)),
                book_count=int(data.get("bookCount", 0)),
                total_records=int(data.get("totalRecords", data.get("totalSize", 0))),
                owner_identity=data.get("ownerIdentity", data.get("userEmail")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid backup metadata: {e}") from e

    def encode(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")


class SnapshotCodec:
    """Builds, serializes and validates snapshot documents.

    Example:
        >>> codec = SnapshotCodec()
        >>> snapshot = await codec.export(store, "user-1")
        >>> codec.decode(codec.encode(snapshot)).book_count == snapshot.book_count
        True
    """

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        """Initialize the codec.

        Args:
            now: Source of the current time, used for missing timestamps
        """
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def export(self, store: CanonicalStore, owner: str) -> Snapshot:
        """Read every collection of an owner into a fresh snapshot."""
        data = await store.read_all(owner)
        snapshot = Snapshot(data)
        logger.debug("Exported snapshot", extra={"owner": owner, "counts": snapshot.counts()})
        return snapshot

    def encode(self, snapshot: Snapshot) -> bytes:
        """Compact UTF-8 JSON document."""
        return json.dumps(
            snapshot.to_document(),
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")

    def build_metadata(
        self,
        snapshot: Snapshot,
        owner: str | None,
        when: datetime | None = None,
    ) -> BackupMetadata:
        return BackupMetadata(
            timestamp=format_timestamp(when or self._now()),
            book_count=snapshot.book_count,
            total_records=snapshot.total_records,
            owner_identity=owner or None,
        )

    def decode(self, raw: bytes | str | Mapping[str, Any]) -> Snapshot:
        """Parse and validate a snapshot document.

        Args:
            raw: Encoded document, or an already parsed mapping

        Returns:
            Snapshot with normalized records

        Raises:
            ValidationError: If the document is malformed
        """
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ValidationError(f"Snapshot is not UTF-8: {e}") from e
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Snapshot is not valid JSON: {e}") from e
        if not isinstance(raw, Mapping):
            raise ValidationError("Snapshot must be a JSON object")

        for collection in COLLECTIONS:
            if collection.optional:
                continue
            if not isinstance(raw.get(collection.key), list):
                raise ValidationError(
                    f"Invalid backup: missing {collection.key}",
                    collection=collection.key,
                )

        decoded_at = format_timestamp(self._now())
        collections: dict[str, list[dict[str, Any]]] = {}
        for collection in COLLECTIONS:
            records = raw.get(collection.key)
            if not isinstance(records, list):
                records = []
            collections[collection.key] = self._normalize_collection(
                collection, records, decoded_at
            )

        return Snapshot(collections)

    def _normalize_collection(
        self,
        collection: Collection,
        records: list[Any],
        decoded_at: str,
    ) -> list[dict[str, Any]]:
        normalized: list[dict[str, Any]] = []
        errors: list[str] = []

        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                errors.append(f"{collection.key}[{index}] is not an object")
                continue
            row: dict[str, Any] = {}
            for column in collection.columns:
                value = record.get(column.name, _MISSING)
                if value is _MISSING:
                    value = record.get(column.alias, _MISSING)
                value = _coerce(column, value, decoded_at)
                if value is None and column.required:
                    errors.append(f"{collection.key}[{index}] missing {column.name}")
                row[column.name] = value
            normalized.append(row)

        if errors:
            raise ValidationError(
                f"Invalid backup: {len(errors)} bad record(s) in {collection.key}",
                collection=collection.key,
                errors=errors[:20],
            )
        return normalized


def _coerce(column: Column, value: Any, decoded_at: str) -> Any:
    """Convert one field to its stored representation."""
    if value is _MISSING or value is None:
        if column.default is not None:
            return column.default
        if column.kind is ColumnKind.TIMESTAMP:
            return decoded_at
        return None

    if isinstance(value, bool):
        return int(value)

    if column.kind is ColumnKind.TIMESTAMP and isinstance(value, (int, float)):
        # Epoch milliseconds from the legacy database
        return format_timestamp(datetime.fromtimestamp(value / 1000, tz=timezone.utc))

    if isinstance(value, (list, dict)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)

    return value
