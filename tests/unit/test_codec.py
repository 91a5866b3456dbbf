"""
Unit tests for the snapshot codec.

Tests cover:
- Document validation (required and optional collections)
- Record normalization (legacy names, composite values, defaults)
- Backup metadata
- Snapshot immutability
"""

import json
from datetime import datetime, timezone

import pytest

from lofi.sync_server.errors import ValidationError
from lofi.sync_server.snapshot.codec import BackupMetadata, Snapshot, SnapshotCodec

NOW = datetime(2026, 10, 17, 9, 30, 0, 123000, tzinfo=timezone.utc)


def minimal(**collections):
    doc = {
        "books": [],
        "characters": [],
        "chapters": [],
        "ideas": [],
        "timelineEvents": [],
        "wishlistItems": [],
        "images": [],
    }
    doc.update(collections)
    return doc


class TestDecodeValidation:
    """Tests for document-level validation."""

    @pytest.fixture
    def codec(self):
        return SnapshotCodec(now=lambda: NOW)

    def test_missing_books_rejected(self, codec):
        """A document without books is invalid."""
        doc = minimal()
        del doc["books"]

        with pytest.raises(ValidationError) as exc_info:
            codec.decode(doc)

        assert exc_info.value.collection == "books"

    def test_non_list_collection_rejected(self, codec):
        with pytest.raises(ValidationError):
            codec.decode(minimal(chapters={"id": "c1"}))

    def test_optional_collections_default_empty(self, codec):
        """Older backups without connections or illustrations still decode."""
        snapshot = codec.decode(minimal())

        assert snapshot.records("connections") == []
        assert snapshot.records("chapterIllustrations") == []

    def test_non_object_record_rejected(self, codec):
        with pytest.raises(ValidationError, match="bad record"):
            codec.decode(minimal(books=["not a record"]))

    def test_missing_required_field_rejected(self, codec):
        """A chapter without a title cannot be stored."""
        with pytest.raises(ValidationError) as exc_info:
            codec.decode(minimal(chapters=[{"id": "c1", "book_id": "b1"}]))

        assert "chapters[0] missing title" in exc_info.value.errors

    def test_invalid_json_rejected(self, codec):
        with pytest.raises(ValidationError, match="not valid JSON"):
            codec.decode(b"{not json")

    def test_non_object_document_rejected(self, codec):
        with pytest.raises(ValidationError):
            codec.decode(b"[1, 2, 3]")

    def test_accepts_bytes_str_and_mapping(self, codec, document_factory):
        doc = document_factory()
        raw = json.dumps(doc)

        for value in (raw.encode("utf-8"), raw, doc):
            assert codec.decode(value).book_count == 1


class TestRecordNormalization:
    """Tests for per-record normalization."""

    @pytest.fixture
    def codec(self):
        return SnapshotCodec(now=lambda: NOW)

    def test_legacy_names_mapped(self, codec):
        """camelCase fields land in their snake_case columns."""
        snapshot = codec.decode(
            minimal(
                books=[{"id": "b1", "title": "T"}],
                timelineEvents=[{"id": "e1", "bookId": "b1", "characterIds": ["c1", "c2"]}],
            )
        )

        event = snapshot.records("timelineEvents")[0]
        assert event["book_id"] == "b1"
        assert json.loads(event["character_ids"]) == ["c1", "c2"]

    def test_canonical_name_wins_over_alias(self, codec):
        snapshot = codec.decode(
            minimal(chapters=[{"id": "c1", "book_id": "b1", "bookId": "other", "title": "T"}])
        )

        assert snapshot.records("chapters")[0]["book_id"] == "b1"

    def test_unknown_fields_dropped(self, codec):
        snapshot = codec.decode(minimal(books=[{"id": "b1", "title": "T", "sparkles": True}]))

        assert "sparkles" not in snapshot.records("books")[0]

    def test_defaults_applied(self, codec):
        """Absent columns take the declared default."""
        snapshot = codec.decode(minimal(timelineEvents=[{"id": "e1", "book_id": "b1"}]))

        event = snapshot.records("timelineEvents")[0]
        assert event["character_ids"] == "[]"
        assert event["event_type"] == "plot"
        assert event["sort_order"] == 0
        assert event["chapter_id"] is None

    def test_missing_timestamps_use_decode_time(self, codec):
        snapshot = codec.decode(minimal(books=[{"id": "b1", "title": "T"}]))

        book = snapshot.records("books")[0]
        assert book["created_at"] == "2026-10-17T09:30:00.123Z"
        assert book["updated_at"] == "2026-10-17T09:30:00.123Z"

    def test_epoch_millis_converted(self, codec):
        snapshot = codec.decode(minimal(books=[{"id": "b1", "title": "T", "createdAt": 1767225600000}]))

        assert snapshot.records("books")[0]["created_at"] == "2026-01-01T00:00:00.000Z"

    def test_booleans_become_integers(self, codec):
        snapshot = codec.decode(minimal(ideas=[{"id": "i1", "book_id": "b1", "zIndex": True}]))

        assert snapshot.records("ideas")[0]["z_index"] == 1

    def test_objects_serialized(self, codec):
        snapshot = codec.decode(
            minimal(characters=[{"id": "c1", "book_id": "b1", "name": "Mira", "relationships": [{"to": "c2"}]}])
        )

        assert json.loads(snapshot.records("characters")[0]["relationships"]) == [{"to": "c2"}]

    def test_json_text_kept(self, codec):
        """Already-serialized composite values pass through unchanged."""
        snapshot = codec.decode(
            minimal(characters=[{"id": "c1", "book_id": "b1", "name": "Mira", "personality_traits": '["kind"]'}])
        )

        assert snapshot.records("characters")[0]["personality_traits"] == '["kind"]'


class TestEncode:
    """Tests for encode()."""

    def test_encode_then_decode_preserves_records(self, document_factory):
        codec = SnapshotCodec(now=lambda: NOW)
        snapshot = codec.decode(document_factory(books=2))

        again = codec.decode(codec.encode(snapshot))

        assert again.to_document() == snapshot.to_document()

    def test_encode_is_compact_utf8(self):
        codec = SnapshotCodec()
        snapshot = codec.decode(minimal(books=[{"id": "b1", "title": "Café"}]))

        raw = codec.encode(snapshot)

        assert b" " not in raw.replace("Café".encode("utf-8"), b"")
        assert "Café".encode("utf-8") in raw


class TestSnapshot:
    """Tests for the Snapshot value."""

    def test_counts(self, document_factory):
        snapshot = SnapshotCodec().decode(document_factory(books=2))

        assert snapshot.book_count == 2
        # books + characters + chapters + ideas + timeline events + wish list
        assert snapshot.total_records == 2 + 2 + 4 + 4 + 2 + 1

    def test_records_are_copies(self):
        snapshot = Snapshot({"books": [{"id": "b1", "title": "T"}]})

        snapshot.records("books")[0]["title"] = "changed"

        assert snapshot.records("books")[0]["title"] == "T"

    def test_source_lists_are_copied(self):
        books = [{"id": "b1", "title": "T"}]
        snapshot = Snapshot({"books": books})

        books.append({"id": "b2", "title": "U"})

        assert snapshot.book_count == 1


class TestBackupMetadata:
    """Tests for BackupMetadata."""

    def test_build_metadata(self, document_factory):
        codec = SnapshotCodec(now=lambda: NOW)
        snapshot = codec.decode(document_factory())

        metadata = codec.build_metadata(snapshot, "writer@example.com")

        assert metadata.to_dict() == {
            "timestamp": "2026-10-17T09:30:00.123Z",
            "version": 2,
            "bookCount": 1,
            "totalRecords": snapshot.total_records,
            "ownerIdentity": "writer@example.com",
        }

    def test_from_dict_roundtrip(self):
        metadata = BackupMetadata(timestamp="2026-10-17T09:30:00.123Z", book_count=3, total_records=40)

        assert BackupMetadata.from_dict(json.loads(metadata.encode())) == metadata

    def test_legacy_keys_accepted(self):
        """Metadata written by the old client used totalSize and userEmail."""
        metadata = BackupMetadata.from_dict(
            {"timestamp": "2025-05-01T00:00:00Z", "version": 1, "bookCount": 2, "totalSize": 17,
             "userEmail": "old@example.com"}
        )

        assert metadata.total_records == 17
        assert metadata.owner_identity == "old@example.com"

    def test_missing_timestamp_rejected(self):
        with pytest.raises(ValidationError):
            BackupMetadata.from_dict({"bookCount": 1})
