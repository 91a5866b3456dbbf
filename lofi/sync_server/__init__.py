"""
Lofi Sync Server - backup, restore and migration engine for Lofi Books.

This package keeps a writer's whole workspace (books, chapters, characters,
storyboard ideas, timeline, wish list) safe in a remote object store:
- Full-dataset JSON snapshots uploaded to OneDrive (Microsoft Graph) or S3
- Debounced backups after local writes plus a periodic safety net
- Rotation of historical snapshots
- Atomic restore onto a new device
- One-shot migration out of the legacy local-only database

Architecture:
    ┌─────────────┐  notify   ┌───────────────────┐  export  ┌──────────────┐
    │ CRUD routes │──────────▶│ BackupOrchestrator│─────────▶│ SQLite store │
    └─────────────┘           └─────────┬─────────┘          └──────▲───────┘
                                        │ upload/list/delete        │ restore
                                        ▼                           │
                              ┌───────────────────┐        ┌────────┴───────┐
                              │  RemoteTransport  │        │ RestoreImporter│
                              │ (Graph / S3 / mem)│        └────────▲───────┘
                              └───────────────────┘                 │
                                                           ┌────────┴───────┐
                                                           │ LegacyMigrator │
                                                           └────────────────┘

Invariants:
    - The SQLite canonical store is the source of truth on this device
    - Remote snapshots are full replacements (last writer wins)
    - At most one backup or restore is in flight per orchestrator
    - A restore either applies completely or not at all

How to change safely:
    - Add snapshot collections as optional keys so old backups still decode
    - Never rename remote object names; old devices look for them
    - Bump BackupMetadata version when the document layout changes
"""

from ._version import __version__

__all__ = ["__version__"]
