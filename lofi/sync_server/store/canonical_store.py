"""
Canonical SQLite store for Lofi Books.

This module manages the authoritative local database that the CRUD
routes write to and the sync engine snapshots and restores:
- One table per snapshot collection (see schema.py)
- Owner scoping: books and wish-list items carry user_id, every
  other collection is scoped through its book
- Read-all, wipe and bulk-insert primitives for backup and restore
- An exclusive transaction context for replace-all restores

Invariants:
    - Foreign keys are enforced on every connection
    - Writes run inside explicit transactions (BEGIN IMMEDIATE)
    - Only one transaction or read runs at a time (store lock)
    - Export order is insertion order (rowid)

How to change safely:
    - Add tables through schema.py, never with ad hoc SQL here
    - Keep wipe() scoped to a single owner; other accounts share the file
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any

from .schema import BOOKS, COLLECTIONS, Collection, create_schema_sql, get_collection

logger = logging.getLogger(__name__)


class CanonicalStore:
    """SQLite store holding every account's workspace data.

    Thread safety:
        A connection is created per operation. Operations are serialized
        with an asyncio lock so a restore never interleaves with reads.

    Example:
        >>> store = CanonicalStore("/data/lofi-books.db")
        >>> await store.initialize()
        >>> await store.has_data("user-1")
        False
    """

    def __init__(
        self,
        db_path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the canonical store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection to the database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript(create_schema_sql())
        logger.info(f"Initialized canonical store: {self.db_path}")

    def _scope_clause(self, collection: Collection) -> str:
        if collection.owner_column:
            return f"{collection.owner_column} = ?"
        return f"book_id IN (SELECT id FROM {BOOKS.table} WHERE {BOOKS.owner_column} = ?)"

    def _select(self, conn: sqlite3.Connection, collection: Collection, owner: str) -> list[dict[str, Any]]:
        columns = ", ".join(collection.column_names)
        cursor = conn.execute(
            f"SELECT {columns} FROM {collection.table} "
            f"WHERE {self._scope_clause(collection)} ORDER BY rowid",
            (owner,),
        )
        return [dict(row) for row in cursor.fetchall()]

    async def read_collection(self, key: str, owner: str) -> list[dict[str, Any]]:
        """Read every row of one collection belonging to an owner.

        Args:
            key: Snapshot collection key (e.g. "timelineEvents")
            owner: Account identity

        Returns:
            Rows as dicts keyed by canonical column name
        """
        collection = get_collection(key)
        async with self._lock:
            with self._get_connection() as conn:
                return self._select(conn, collection, owner)

    async def read_all(self, owner: str) -> dict[str, list[dict[str, Any]]]:
        """Read every collection for an owner from one connection.

        Returns:
            Mapping of snapshot collection key to rows
        """
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN")
                try:
                    data = {c.key: self._select(conn, c, owner) for c in COLLECTIONS}
                finally:
                    conn.execute("COMMIT")
        return data

    async def count(self, key: str, owner: str) -> int:
        """Count the owner's rows in one collection."""
        collection = get_collection(key)
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"SELECT COUNT(*) FROM {collection.table} "
                    f"WHERE {self._scope_clause(collection)}",
                    (owner,),
                )
                return cursor.fetchone()[0]

    async def has_data(self, owner: str) -> bool:
        """Whether the owner has at least one book."""
        return await self.count(BOOKS.key, owner) > 0

    async def get_stats(self, owner: str) -> dict[str, int]:
        """Row counts per collection for an owner."""
        async with self._lock:
            with self._get_connection() as conn:
                stats = {}
                for collection in COLLECTIONS:
                    cursor = conn.execute(
                        f"SELECT COUNT(*) FROM {collection.table} "
                        f"WHERE {self._scope_clause(collection)}",
                        (owner,),
                    )
                    stats[collection.key] = cursor.fetchone()[0]
                return stats

    async def insert_record(self, key: str, record: dict[str, Any]) -> None:
        """Insert a single canonical row, e.g. to seed a store for an import or test."""
        collection = get_collection(key)
        async with self.transaction() as conn:
            self.bulk_insert(conn, collection, [record])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """Exclusive write transaction.

        The body must not await other store operations: the store lock is
        held until the transaction commits or rolls back.

        Yields:
            Connection with an open IMMEDIATE transaction
        """
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise

    def wipe(self, conn: sqlite3.Connection, collection: Collection, owner: str) -> int:
        """Delete the owner's rows of one collection inside a transaction.

        Returns:
            Number of rows deleted
        """
        cursor = conn.execute(
            f"DELETE FROM {collection.table} WHERE {self._scope_clause(collection)}",
            (owner,),
        )
        return cursor.rowcount

    def bulk_insert(
        self,
        conn: sqlite3.Connection,
        collection: Collection,
        records: list[dict[str, Any]],
    ) -> int:
        """Insert canonical rows inside a transaction.

        Missing fields take the column default.

        Returns:
            Number of rows inserted
        """
        if not records:
            return 0
        names = collection.column_names
        placeholders = ", ".join("?" for _ in names)
        conn.executemany(
            f"INSERT INTO {collection.table} ({', '.join(names)}) VALUES ({placeholders})",
            [tuple(record.get(c.name, c.default) for c in collection.columns) for record in records],
        )
        return len(records)

    async def integrity_check(self) -> None:
        """Run SQLite integrity and foreign key checks.

        Raises:
            ValueError: If either check reports a problem
        """
        async with self._lock:
            with self._get_connection() as conn:
                result = conn.execute("PRAGMA integrity_check").fetchone()[0]
                if result != "ok":
                    raise ValueError(f"Database integrity check failed: {result}")
                violations = conn.execute("PRAGMA foreign_key_check").fetchall()
                if violations:
                    raise ValueError(f"Foreign key violations: {len(violations)}")
