"""
Replace-all restore of a snapshot into the canonical store.

The restore runs as one IMMEDIATE transaction:
    1. Delete the owner's rows of every collection, children first
    2. Insert every collection of the snapshot, parents first
    3. Stamp owner columns (books.user_id, wishlist_items.user_id)

Foreign keys stay enabled for the whole transaction, so a snapshot
whose children reference missing parents is rejected and rolled back
instead of leaving orphans behind.

Invariants:
    - Either the whole snapshot lands or the store is unchanged
    - Other accounts' rows are never touched
    - Insert and delete order derive from the declared schema only
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any

from ..errors import ValidationError
from ..store.canonical_store import CanonicalStore
from ..store.schema import BOOKS, COUNTED_KEYS, Collection, topological_order
from .codec import Snapshot

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Outcome of a restore.

    Attributes:
        owner: Account the data was restored for
        inserted: Rows inserted per collection
        deleted: Rows deleted per collection
        duration_ms: Time spent inside the transaction
    """

    owner: str
    inserted: dict[str, int] = field(default_factory=dict)
    deleted: dict[str, int] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def book_count(self) -> int:
        return self.inserted.get(BOOKS.key, 0)

    @property
    def total_records(self) -> int:
        return sum(self.inserted.get(key, 0) for key in COUNTED_KEYS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "bookCount": self.book_count,
            "totalRecords": self.total_records,
            "inserted": dict(self.inserted),
        }


class RestoreImporter:
    """Imports snapshots into the canonical store atomically."""

    def __init__(self) -> None:
        self._order: list[Collection] = topological_order()

    @property
    def insert_order(self) -> list[str]:
        return [c.key for c in self._order]

    @property
    def delete_order(self) -> list[str]:
        return [c.key for c in reversed(self._order)]

    async def restore(self, store: CanonicalStore, snapshot: Snapshot, owner: str) -> ImportResult:
        """Replace the owner's dataset with the snapshot.

        Args:
            store: Target canonical store
            snapshot: Decoded snapshot
            owner: Account identity stamped onto owner columns

        Returns:
            ImportResult with per-collection counts

        Raises:
            ValidationError: If the snapshot violates a store constraint
        """
        result = ImportResult(owner=owner)
        start = time.monotonic()

        try:
            async with store.transaction() as conn:
                for collection in reversed(self._order):
                    result.deleted[collection.key] = store.wipe(conn, collection, owner)

                for collection in self._order:
                    records = snapshot.records(collection.key)
                    if collection.owner_column:
                        for record in records:
                            record[collection.owner_column] = owner
                    result.inserted[collection.key] = store.bulk_insert(conn, collection, records)
        except sqlite3.IntegrityError as e:
            logger.warning(f"Restore rejected, store unchanged: {e}", extra={"owner": owner})
            raise ValidationError(f"Snapshot violates store constraints: {e}") from e

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Snapshot restored",
            extra={
                "owner": owner,
                "book_count": result.book_count,
                "total_records": result.total_records,
                "duration_ms": result.duration_ms,
            },
        )
        return result
