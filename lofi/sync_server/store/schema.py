"""
Canonical schema for the Lofi Books dataset.

The dataset is declared once, as data:
- Column: one stored field (kind, default, parent reference)
- Collection: one snapshot collection and its SQLite table

Everything else is derived from these declarations:
- CREATE TABLE statements
- The field-mapping table used to normalize snapshot records
  (canonical snake_case names and legacy camelCase names)
- The parent-before-child insert order and child-before-parent delete order

Invariants:
    - Every mapping target is a declared column of its table
    - No two columns of one collection share a name or alias
    - Parent references name a declared collection and its "id" column
    - The parent graph is acyclic
    - validate_schema() runs at import time; an inconsistent schema
      fails loudly before any data is touched

How to change safely:
    - New columns need a default so older snapshots still restore
    - New collections must be optional in the snapshot document
    - Never rename a legacy alias; old exports still use it
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import SchemaError


class ColumnKind(Enum):
    """Storage representation of a column."""

    TEXT = "text"
    INTEGER = "integer"
    REAL = "real"
    JSON = "json"  # composite value stored as JSON text
    TIMESTAMP = "timestamp"  # ISO-8601 text

    @property
    def sql_type(self) -> str:
        if self is ColumnKind.INTEGER:
            return "INTEGER"
        if self is ColumnKind.REAL:
            return "REAL"
        return "TEXT"


@dataclass(frozen=True)
class Column:
    """Definition of a single stored field.

    Attributes:
        name: Canonical (snake_case) column name
        kind: Storage representation
        not_null: Whether the column rejects NULL
        default: Value applied when a snapshot record omits the field
        references: Parent collection key when the column points at a parent row
        enforced: Whether the reference is a real foreign key constraint
        legacy_name: Field name used by the legacy local-only database
    """

    name: str
    kind: ColumnKind = ColumnKind.TEXT
    not_null: bool = False
    default: Any = None
    references: str | None = None
    enforced: bool = True
    legacy_name: str | None = None

    @property
    def alias(self) -> str:
        return self.legacy_name or _camel_case(self.name)

    @property
    def required(self) -> bool:
        """Whether a record must carry a value for this column."""
        return self.not_null and self.default is None and self.kind is not ColumnKind.TIMESTAMP

    def ddl(self) -> str:
        parts = [self.name, self.kind.sql_type]
        if self.name == "id":
            parts.append("PRIMARY KEY")
        elif self.not_null:
            parts.append("NOT NULL")
        if self.default is not None:
            parts.append(f"DEFAULT {_sql_literal(self.default)}")
        if self.references and self.enforced:
            parts.append(f"REFERENCES {self.references}(id) ON DELETE CASCADE")
        return " ".join(parts)


def col(
    name: str,
    kind: str = "text",
    default: Any = None,
    *,
    not_null: bool = True,
    references: str | None = None,
    enforced: bool = True,
    legacy_name: str | None = None,
) -> Column:
    """Shorthand for declaring a Column.

    Example:
        >>> col("sort_order", "integer", 0)
        >>> col("book_id", references="books")
    """
    return Column(
        name=name,
        kind=ColumnKind(kind),
        not_null=not_null,
        default=default,
        references=references,
        enforced=enforced,
        legacy_name=legacy_name,
    )


@dataclass(frozen=True)
class Collection:
    """A snapshot collection and the table that stores it.

    Attributes:
        key: Top-level key in the snapshot document
        table: SQLite table name
        columns: Stored columns, in insert order
        optional: Whether older snapshots may omit the collection
        owner_column: Column stamped with the account identity on restore
        legacy_store: Object store name in the legacy database
    """

    key: str
    table: str
    columns: tuple[Column, ...]
    optional: bool = False
    owner_column: str | None = None
    legacy_store: str | None = None

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def parents(self) -> tuple[str, ...]:
        """Collections whose rows must exist before rows of this one."""
        seen: list[str] = []
        for c in self.columns:
            if c.references and c.references not in seen:
                seen.append(c.references)
        return tuple(seen)

    @property
    def field_map(self) -> dict[str, Column]:
        """Snapshot field name (either convention) -> column."""
        mapping: dict[str, Column] = {}
        for c in self.columns:
            mapping[c.name] = c
            mapping[c.alias] = c
        return mapping

    def get_column(self, name: str) -> Column:
        for c in self.columns:
            if c.name == name:
                return c
        raise SchemaError(f"Unknown column {self.table}.{name}", collection=self.key)

    def create_table_sql(self) -> str:
        body = ",\n    ".join(c.ddl() for c in self.columns)
        return f"CREATE TABLE IF NOT EXISTS {self.table} (\n    {body}\n);"


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _sql_literal(value: Any) -> str:
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    return str(value)


BOOKS = Collection(
    key="books",
    table="books",
    owner_column="user_id",
    legacy_store="books",
    columns=(
        col("id"),
        col("title"),
        col("description", default=""),
        col("cover_image_id", not_null=False),
        col("genre", default=""),
        col("user_id", default=""),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

CHARACTERS = Collection(
    key="characters",
    table="characters",
    legacy_store="characters",
    columns=(
        col("id"),
        col("book_id", references="books"),
        col("name"),
        col("main_image_id", not_null=False),
        col("backstory", default=""),
        col("development", default=""),
        col("personality_traits", "json", "[]"),
        col("relationships", "json", "[]"),
        col("special_abilities", "json", "[]"),
        col("role", default="supporting"),
        col("sort_order", "integer", 0),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

CHAPTERS = Collection(
    key="chapters",
    table="chapters",
    legacy_store="chapters",
    columns=(
        col("id"),
        col("book_id", references="books"),
        col("title"),
        col("content", default=""),
        col("sort_order", "integer", 0),
        col("word_count", "integer", 0),
        col("status", default="draft"),
        col("notes", default=""),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

IDEAS = Collection(
    key="ideas",
    table="ideas",
    legacy_store="ideas",
    columns=(
        col("id"),
        col("book_id", references="books"),
        col("type", default="note"),
        col("title", default=""),
        col("description", default=""),
        col("image_id", not_null=False),
        col("color", default="sakura-white"),
        col("position_x", "real", 100),
        col("position_y", "real", 100),
        col("width", "real", 220),
        col("height", "real", 180),
        col("z_index", "integer", 0),
        col("linked_chapter_id", not_null=False),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

TIMELINE_EVENTS = Collection(
    key="timelineEvents",
    table="timeline_events",
    legacy_store="timelineEvents",
    columns=(
        col("id"),
        col("book_id", references="books"),
        col("chapter_id", not_null=False),
        col("character_ids", "json", "[]"),
        col("title", default=""),
        col("description", default=""),
        col("event_type", default="plot"),
        col("sort_order", "integer", 0),
        col("color", default=""),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

WISHLIST_ITEMS = Collection(
    key="wishlistItems",
    table="wishlist_items",
    owner_column="user_id",
    legacy_store="wishlistItems",
    columns=(
        col("id"),
        col("title", default=""),
        col("description", default=""),
        col("type", default="idea"),
        col("status", default="open"),
        col("user_id", default=""),
        col("created_by_name", default=""),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

IMAGES = Collection(
    key="images",
    table="images",
    legacy_store="storedImages",
    columns=(
        col("id"),
        # Image rows may outlive their book on disk; scoped, not constrained.
        col("book_id", references="books", enforced=False),
        col("filename", default=""),
        col("mime_type", default=""),
        col("size", "integer", 0),
        col("created_at", "timestamp"),
    ),
)

CONNECTIONS = Collection(
    key="connections",
    table="connections",
    optional=True,
    columns=(
        col("id"),
        col("book_id", references="books"),
        col("from_idea_id", references="ideas"),
        col("to_idea_id", references="ideas"),
        col("color", default="red"),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

CHAPTER_ILLUSTRATIONS = Collection(
    key="chapterIllustrations",
    table="chapter_illustrations",
    optional=True,
    columns=(
        col("id"),
        col("chapter_id", references="chapters"),
        col("book_id", references="books"),
        col("image_id"),
        col("caption", default=""),
        col("sort_order", "integer", 0),
        col("created_at", "timestamp"),
        col("updated_at", "timestamp"),
    ),
)

COLLECTIONS: tuple[Collection, ...] = (
    BOOKS,
    CHARACTERS,
    CHAPTERS,
    IDEAS,
    CONNECTIONS,
    CHAPTER_ILLUSTRATIONS,
    TIMELINE_EVENTS,
    WISHLIST_ITEMS,
    IMAGES,
)

REQUIRED_KEYS: tuple[str, ...] = tuple(c.key for c in COLLECTIONS if not c.optional)
OPTIONAL_KEYS: tuple[str, ...] = tuple(c.key for c in COLLECTIONS if c.optional)

# Collections counted in BackupMetadata.totalRecords
COUNTED_KEYS: tuple[str, ...] = (
    "books",
    "characters",
    "chapters",
    "ideas",
    "timelineEvents",
    "wishlistItems",
)


def get_collection(key: str) -> Collection:
    """Look up a collection by snapshot key."""
    for collection in COLLECTIONS:
        if collection.key == key:
            return collection
    raise SchemaError(f"Unknown collection: {key}", collection=key)


def topological_order(collections: tuple[Collection, ...] = COLLECTIONS) -> list[Collection]:
    """Order collections parents-first.

    Ties are broken by declaration order so the result is deterministic.

    Raises:
        SchemaError: If the parent graph has a cycle
    """
    remaining = {c.key: set(c.parents) for c in collections}
    by_key = {c.key: c for c in collections}
    ordered: list[Collection] = []

    while remaining:
        ready = [c.key for c in collections if c.key in remaining and not remaining[c.key]]
        if not ready:
            raise SchemaError(f"Cycle in collection parents: {sorted(remaining)}")
        for key in ready:
            ordered.append(by_key[key])
            del remaining[key]
        for deps in remaining.values():
            deps.difference_update(ready)

    return ordered


def create_schema_sql(collections: tuple[Collection, ...] = COLLECTIONS) -> str:
    """DDL for every collection, parents first."""
    return "\n\n".join(c.create_table_sql() for c in topological_order(collections))


def validate_schema(collections: tuple[Collection, ...] = COLLECTIONS) -> None:
    """Check the declared schema for internal consistency.

    Raises:
        SchemaError: On the first inconsistency found
    """
    keys = [c.key for c in collections]
    if len(set(keys)) != len(keys):
        raise SchemaError(f"Duplicate collection keys: {keys}")

    by_key = {c.key: c for c in collections}
    for collection in collections:
        names = collection.column_names
        if "id" not in names:
            raise SchemaError(f"{collection.table} has no id column", collection=collection.key)
        if len(set(names)) != len(names):
            raise SchemaError(f"Duplicate columns in {collection.table}", collection=collection.key)

        owners: dict[str, str] = {}
        for column in collection.columns:
            for name in (column.name, column.alias):
                other = owners.setdefault(name, column.name)
                if other != column.name:
                    raise SchemaError(
                        f"Field name '{name}' maps to both {other} and {column.name} "
                        f"in {collection.table}",
                        collection=collection.key,
                    )
            if column.references and column.references not in by_key:
                raise SchemaError(
                    f"{collection.table}.{column.name} references unknown "
                    f"collection '{column.references}'",
                    collection=collection.key,
                )

        for target in collection.field_map.values():
            if target.name not in names:
                raise SchemaError(
                    f"Mapping target {target.name} is not a column of {collection.table}",
                    collection=collection.key,
                )

        if collection.owner_column and collection.owner_column not in names:
            raise SchemaError(
                f"Owner column {collection.owner_column} missing from {collection.table}",
                collection=collection.key,
            )
        if not collection.owner_column and "books" not in collection.parents:
            raise SchemaError(
                f"{collection.table} has neither an owner column nor a book reference",
                collection=collection.key,
            )

    topological_order(collections)


validate_schema()
