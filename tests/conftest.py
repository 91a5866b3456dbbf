"""
Shared fixtures for Lofi sync tests.

Provides:
- A temporary data directory
- An initialized canonical store
- A factory for realistic snapshot documents
- A factory for legacy (MoBookDB) database files
"""

import json
import sqlite3
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from lofi.sync_server.store.canonical_store import CanonicalStore

OWNER = "writer@example.com"

STAMP = "2026-01-01T00:00:00.000Z"


def make_document(books: int = 1, prefix: str = "") -> dict:
    """Build a snapshot document with every collection populated.

    Each book gets one character, two chapters, two ideas joined by a
    connection, one illustration, one timeline event and one image.
    """
    doc: dict[str, list] = {
        "books": [],
        "characters": [],
        "chapters": [],
        "ideas": [],
        "connections": [],
        "chapterIllustrations": [],
        "timelineEvents": [],
        "wishlistItems": [],
        "images": [],
    }
    for n in range(1, books + 1):
        book = f"{prefix}book-{n}"
        doc["books"].append(
            {
                "id": book,
                "title": f"The Lantern Road {n}",
                "description": "A courier crosses a sleeping city.",
                "cover_image_id": None,
                "genre": "fantasy",
                "user_id": "previous-owner",
                "created_at": STAMP,
                "updated_at": STAMP,
            }
        )
        doc["characters"].append(
            {
                "id": f"{book}-char-1",
                "book_id": book,
                "name": "Mira",
                "personality_traits": ["stubborn", "kind"],
                "role": "protagonist",
                "sort_order": 0,
                "created_at": STAMP,
                "updated_at": STAMP,
            }
        )
        for c in (1, 2):
            doc["chapters"].append(
                {
                    "id": f"{book}-ch-{c}",
                    "book_id": book,
                    "title": f"Chapter {c}",
                    "content": "<p>Rain on the tram lines.</p>",
                    "sort_order": c,
                    "word_count": 5,
                    "created_at": STAMP,
                    "updated_at": STAMP,
                }
            )
            doc["ideas"].append(
                {
                    "id": f"{book}-idea-{c}",
                    "book_id": book,
                    "type": "note",
                    "title": f"Idea {c}",
                    "position_x": 100 * c,
                    "position_y": 80,
                    "created_at": STAMP,
                    "updated_at": STAMP,
                }
            )
        doc["connections"].append(
            {
                "id": f"{book}-conn-1",
                "book_id": book,
                "from_idea_id": f"{book}-idea-1",
                "to_idea_id": f"{book}-idea-2",
                "created_at": STAMP,
                "updated_at": STAMP,
            }
        )
        doc["chapterIllustrations"].append(
            {
                "id": f"{book}-ill-1",
                "chapter_id": f"{book}-ch-1",
                "book_id": book,
                "image_id": f"{book}-img-1",
                "caption": "The tram depot",
                "created_at": STAMP,
                "updated_at": STAMP,
            }
        )
        doc["timelineEvents"].append(
            {
                "id": f"{book}-ev-1",
                "book_id": book,
                "chapter_id": f"{book}-ch-1",
                "character_ids": [f"{book}-char-1"],
                "title": "The letter arrives",
                "created_at": STAMP,
                "updated_at": STAMP,
            }
        )
        doc["images"].append(
            {
                "id": f"{book}-img-1",
                "book_id": book,
                "filename": "depot.png",
                "mime_type": "image/png",
                "size": 2048,
                "created_at": STAMP,
            }
        )
    doc["wishlistItems"].append(
        {
            "id": f"{prefix}wish-1",
            "title": "Export to EPUB",
            "type": "feature",
            "status": "open",
            "user_id": "previous-owner",
            "created_by_name": "Writer",
            "created_at": STAMP,
            "updated_at": STAMP,
        }
    )
    return doc


def make_legacy_db(path: Path, stores: dict[str, list[dict]]) -> Path:
    """Write a MoBookDB-style SQLite file: one (key, value JSON) table per store."""
    conn = sqlite3.connect(str(path))
    try:
        for store_name, records in stores.items():
            conn.execute(f'CREATE TABLE "{store_name}" (key TEXT PRIMARY KEY, value TEXT NOT NULL)')
            conn.executemany(
                f'INSERT INTO "{store_name}" (key, value) VALUES (?, ?)',
                [(r["id"], json.dumps(r)) for r in records],
            )
        conn.commit()
    finally:
        conn.close()
    return path


def legacy_stores(books: int = 1) -> dict[str, list[dict]]:
    """Legacy object stores in camelCase naming with epoch-millisecond timestamps."""
    stores: dict[str, list[dict]] = {
        "books": [],
        "characters": [],
        "chapters": [],
        "ideas": [],
        "timelineEvents": [],
        "storedImages": [],
        "wishlistItems": [],
    }
    for n in range(1, books + 1):
        book = f"legacy-book-{n}"
        stores["books"].append(
            {
                "id": book,
                "title": f"Old Draft {n}",
                "genre": "mystery",
                "coverImageId": None,
                "createdAt": 1767225600000,
                "updatedAt": 1767225600000,
            }
        )
        stores["characters"].append(
            {
                "id": f"{book}-char",
                "bookId": book,
                "name": "Inspector Vale",
                "personalityTraits": ["patient"],
                "specialAbilities": [],
                "createdAt": 1767225600000,
                "updatedAt": 1767225600000,
            }
        )
        stores["chapters"].append(
            {
                "id": f"{book}-ch",
                "bookId": book,
                "title": "The Empty Platform",
                "content": "<p>Fog.</p>",
                "sortOrder": 0,
                "wordCount": 1,
                "createdAt": 1767225600000,
                "updatedAt": 1767225600000,
            }
        )
        stores["timelineEvents"].append(
            {
                "id": f"{book}-ev",
                "bookId": book,
                "characterIds": [f"{book}-char"],
                "title": "Body found",
                "eventType": "plot",
                "createdAt": 1767225600000,
                "updatedAt": 1767225600000,
            }
        )
        stores["storedImages"].append(
            {
                "id": f"{book}-img",
                "bookId": book,
                "filename": "map.jpg",
                "mimeType": "image/jpeg",
                "size": 4096,
                "createdAt": 1767225600000,
            }
        )
    return stores


@pytest.fixture
def owner():
    """Account identity used throughout the tests."""
    return OWNER


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def store(data_dir):
    """Create an initialized canonical store."""
    s = CanonicalStore(data_dir / "lofi-books.db", wal_mode=False)
    await s.initialize()
    return s


@pytest.fixture
def document_factory():
    return make_document


@pytest.fixture
def legacy_db_factory():
    """Write a legacy database; pass stores=None for a populated default."""

    def factory(path: Path, stores: dict[str, list[dict]] | None = None) -> Path:
        return make_legacy_db(path, legacy_stores() if stores is None else stores)

    return factory


@pytest.fixture
def legacy_store_factory():
    """Build legacy object store contents (see legacy_stores())."""
    return legacy_stores
