"""
Retention of historical snapshots.

Every backup writes a new historical object; rotation keeps the newest
MAX_BACKUPS of them and marks the rest for deletion. The policy is pure:
it never talks to the remote, the orchestrator performs the deletions.

Invariants:
    - Input is newest first (as returned by list_backups())
    - The newest `keep` handles are never selected for deletion
    - latest-backup.json is never part of the input
"""

from __future__ import annotations

from dataclasses import dataclass

from ..remote.base import RemoteObjectHandle

MAX_BACKUPS = 3


def select_for_deletion(
    handles: list[RemoteObjectHandle],
    keep: int = MAX_BACKUPS,
) -> list[RemoteObjectHandle]:
    """Historical snapshots beyond the retention limit.

    Args:
        handles: Historical snapshots, newest first
        keep: How many of the newest to retain

    Returns:
        handles[keep:]

    Raises:
        ValueError: If keep is negative
    """
    if keep < 0:
        raise ValueError(f"keep must not be negative, got {keep}")
    return list(handles[keep:])


@dataclass(frozen=True)
class RotationPolicy:
    """Keep-newest-N retention policy."""

    keep: int = MAX_BACKUPS

    def plan(
        self, handles: list[RemoteObjectHandle]
    ) -> tuple[list[RemoteObjectHandle], list[RemoteObjectHandle]]:
        """Split handles into (retained, to delete)."""
        delete = select_for_deletion(handles, self.keep)
        return list(handles[: len(handles) - len(delete)]), delete
