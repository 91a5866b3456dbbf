"""
Integration tests for migrating the legacy local database.

Tests cover:
- Full migration into an empty canonical store
- Skipping when the canonical store already has data
- Deleting an empty legacy database
- Leaving the legacy file in place when the import fails
"""

import pytest

from lofi.sync_server.errors import ValidationError
from lofi.sync_server.migrate.legacy import LegacyMigrator


class TestLegacyMigrator:
    """Tests for LegacyMigrator."""

    @pytest.mark.asyncio
    async def test_migrates_and_deletes(self, store, owner, data_dir, legacy_db_factory):
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite")
        migrator = LegacyMigrator(path)

        result = await migrator.migrate(store, owner)

        assert result.migrated
        assert result.legacy_deleted
        assert result.book_count == 1
        assert not migrator.has_legacy_data()
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_records_normalized(self, store, owner, data_dir, legacy_db_factory):
        """camelCase records and epoch timestamps land as canonical rows."""
        migrator = LegacyMigrator(legacy_db_factory(data_dir / "MoBookDB.sqlite"))

        await migrator.migrate(store, owner)

        books = await store.read_collection("books", owner)
        chapters = await store.read_collection("chapters", owner)
        events = await store.read_collection("timelineEvents", owner)
        images = await store.read_collection("images", owner)
        assert books[0]["user_id"] == owner
        assert books[0]["created_at"] == "2026-01-01T00:00:00.000Z"
        assert chapters[0]["book_id"] == "legacy-book-1"
        assert events[0]["character_ids"] == '["legacy-book-1-char"]'
        assert images[0]["mime_type"] == "image/jpeg"

    @pytest.mark.asyncio
    async def test_skips_when_store_has_data(self, store, owner, data_dir, legacy_db_factory, document_factory):
        from lofi.sync_server.snapshot.codec import SnapshotCodec
        from lofi.sync_server.snapshot.importer import RestoreImporter

        await RestoreImporter().restore(store, SnapshotCodec().decode(document_factory()), owner)
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite")

        result = await LegacyMigrator(path).migrate(store, owner)

        assert not result.migrated
        assert result.reason == "canonical store not empty"
        assert path.exists()

    @pytest.mark.asyncio
    async def test_empty_legacy_database_deleted(self, store, owner, data_dir, legacy_db_factory, legacy_store_factory):
        stores = {name: [] for name in legacy_store_factory()}
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite", stores)

        result = await LegacyMigrator(path).migrate(store, owner)

        assert not result.migrated
        assert result.legacy_deleted
        assert not path.exists()
        assert not await store.has_data(owner)

    @pytest.mark.asyncio
    async def test_no_legacy_database(self, store, owner, data_dir):
        result = await LegacyMigrator(data_dir / "MoBookDB.sqlite").migrate(store, owner)

        assert not result.migrated
        assert result.reason == "no legacy database"

    @pytest.mark.asyncio
    async def test_invalid_records_keep_legacy_file(self, store, owner, data_dir, legacy_db_factory, legacy_store_factory):
        """A chapter without a title fails validation; nothing is deleted."""
        stores = legacy_store_factory()
        del stores["chapters"][0]["title"]
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite", stores)

        with pytest.raises(ValidationError):
            await LegacyMigrator(path).migrate(store, owner)

        assert path.exists()
        assert not await store.has_data(owner)

    @pytest.mark.asyncio
    async def test_side_files_removed(self, store, owner, data_dir, legacy_db_factory):
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite")
        side = data_dir / "MoBookDB.sqlite-wal"
        side.write_bytes(b"")

        await LegacyMigrator(path).migrate(store, owner)

        assert not side.exists()

    def test_missing_store_tables_tolerated(self, data_dir, legacy_db_factory, legacy_store_factory):
        """Databases written before ideas existed have no ideas table."""
        stores = legacy_store_factory()
        del stores["ideas"]
        del stores["wishlistItems"]
        path = legacy_db_factory(data_dir / "MoBookDB.sqlite", stores)

        document = LegacyMigrator(path).extract()

        assert document["ideas"] == []
        assert document["connections"] == []
        assert len(document["books"]) == 1
