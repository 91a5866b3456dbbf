"""
Store module - the canonical local dataset.

This module handles:
- The declared schema (collections, columns, parent relations)
- The SQLite canonical store and its transaction primitives

Invariants:
    - The schema is validated at import time
    - Restores replace an owner's rows inside one transaction
"""

from .canonical_store import CanonicalStore
from .schema import (
    COLLECTIONS,
    OPTIONAL_KEYS,
    REQUIRED_KEYS,
    Collection,
    Column,
    ColumnKind,
    get_collection,
    topological_order,
    validate_schema,
)

__all__ = [
    "CanonicalStore",
    "COLLECTIONS",
    "OPTIONAL_KEYS",
    "REQUIRED_KEYS",
    "Collection",
    "Column",
    "ColumnKind",
    "get_collection",
    "topological_order",
    "validate_schema",
]
