"""
One-shot migration out of the superseded local-only database.

Before the canonical store existed, each device kept its workspace in a
local object database (MoBookDB). Its on-disk export is a single SQLite
file with one table per object store:

    books, characters, ideas, timelineEvents, chapters,
    storedImages, wishlistItems

Each table holds (key TEXT PRIMARY KEY, value TEXT) rows where value is
the JSON record in camelCase naming.

Migration reads every store, remaps store names to snapshot collection
keys (storedImages -> images), runs the result through the regular
snapshot decode + restore path and then deletes the legacy file.

Invariants:
    - Runs only when the owner has no data in the canonical store
    - The legacy file (and its -wal/-shm side files) is deleted only after
      a successful import, or when it holds no books
    - After a successful run has_legacy_data() is False
    - Binary image payloads are not carried, only image metadata

How to change safely:
    - Never delete the legacy file before the import transaction commits
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..errors import ValidationError
from ..snapshot.codec import SnapshotCodec
from ..snapshot.importer import RestoreImporter
from ..store.canonical_store import CanonicalStore
from ..store.schema import BOOKS, COLLECTIONS

logger = logging.getLogger(__name__)

_SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


@dataclass
class MigrationResult:
    """Outcome of a legacy migration.

    Attributes:
        migrated: Whether records were imported
        legacy_deleted: Whether the legacy database was removed
        counts: Records imported per collection
        reason: Why nothing was imported, when migrated is False
    """

    migrated: bool
    legacy_deleted: bool = False
    counts: dict[str, int] = field(default_factory=dict)
    reason: str | None = None

    @property
    def book_count(self) -> int:
        return self.counts.get(BOOKS.key, 0)


class LegacyMigrator:
    """Moves legacy local data into the canonical store.

    Example:
        >>> migrator = LegacyMigrator("/data/MoBookDB.sqlite")
        >>> if migrator.has_legacy_data():
        ...     await migrator.migrate(store, "user-1")
    """

    def __init__(
        self,
        legacy_path: str | Path,
        codec: SnapshotCodec | None = None,
        importer: RestoreImporter | None = None,
    ) -> None:
        self.legacy_path = Path(legacy_path)
        self.codec = codec or SnapshotCodec()
        self.importer = importer or RestoreImporter()

    def has_legacy_data(self) -> bool:
        """Whether the legacy database file exists."""
        return self.legacy_path.is_file()

    def _read_store(self, conn: sqlite3.Connection, store_name: str) -> list[Any]:
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (store_name,),
        ).fetchone()
        if not exists:
            return []

        records = []
        for key, value in conn.execute(f'SELECT key, value FROM "{store_name}" ORDER BY rowid'):
            try:
                records.append(json.loads(value))
            except (TypeError, json.JSONDecodeError) as e:
                raise ValidationError(
                    f"Legacy record {store_name}/{key} is not valid JSON: {e}",
                    collection=store_name,
                ) from e
        return records

    def extract(self) -> dict[str, list[Any]] | None:
        """Read every legacy object store.

        Returns:
            Document keyed by snapshot collection key, or None when the
            legacy database holds no books
        """
        if not self.has_legacy_data():
            return None

        conn = sqlite3.connect(f"file:{self.legacy_path}?mode=ro", uri=True)
        try:
            document = {
                c.key: self._read_store(conn, c.legacy_store)
                for c in COLLECTIONS
                if c.legacy_store
            }
        finally:
            conn.close()

        for collection in COLLECTIONS:
            document.setdefault(collection.key, [])

        if not document[BOOKS.key]:
            return None
        return document

    def delete_legacy(self) -> None:
        """Remove the legacy database and its side files."""
        for path in [self.legacy_path] + [
            self.legacy_path.with_name(self.legacy_path.name + s) for s in _SIDE_FILE_SUFFIXES
        ]:
            path.unlink(missing_ok=True)
        logger.info(f"Deleted legacy database: {self.legacy_path}")

    async def migrate(self, store: CanonicalStore, owner: str) -> MigrationResult:
        """Import legacy data for an owner, then delete the legacy database.

        Raises:
            ValidationError: If the legacy data cannot be decoded or imported
        """
        if not self.has_legacy_data():
            return MigrationResult(migrated=False, reason="no legacy database")

        if await store.has_data(owner):
            logger.info("Canonical store already has data, skipping legacy migration")
            return MigrationResult(migrated=False, reason="canonical store not empty")

        document = self.extract()
        if document is None:
            self.delete_legacy()
            return MigrationResult(migrated=False, legacy_deleted=True, reason="legacy database empty")

        snapshot = self.codec.decode(document)
        result = await self.importer.restore(store, snapshot, owner)
        self.delete_legacy()

        logger.info(
            "Legacy data migrated",
            extra={"owner": owner, "book_count": result.book_count, "counts": result.inserted},
        )
        return MigrationResult(migrated=True, legacy_deleted=True, counts=dict(result.inserted))
