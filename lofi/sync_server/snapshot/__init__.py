"""
Snapshot documents: encoding, validation, retention and restore.
"""

from .codec import BackupMetadata, Snapshot, SnapshotCodec, format_timestamp
from .importer import ImportResult, RestoreImporter
from .rotation import MAX_BACKUPS, RotationPolicy, select_for_deletion

__all__ = [
    "MAX_BACKUPS",
    "BackupMetadata",
    "ImportResult",
    "RestoreImporter",
    "RotationPolicy",
    "Snapshot",
    "SnapshotCodec",
    "format_timestamp",
    "select_for_deletion",
]
