"""
Migration of data out of the superseded local-only database.
"""

from .legacy import LegacyMigrator, MigrationResult

__all__ = ["LegacyMigrator", "MigrationResult"]
