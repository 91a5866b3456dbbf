"""
Base protocol and types for the remote object store abstraction.

This module defines the RemoteTransport protocol that all backends must
implement, along with the remote object naming scheme, object handles
and the bearer credential provider.

Remote layout inside the backup folder:
    latest-backup.json           <- always the most recent snapshot
    backup-<timestamp>.json      <- historical snapshots, rotated
    backup-meta.json             <- BackupMetadata of the latest backup

Invariants:
    - Object names are fixed; old devices look for them
    - list_backups() only ever returns historical snapshot objects
    - Chunks of one upload are sent in order, never in parallel
    - delete() never raises; failures are logged and reported as False

How to change safely:
    - Protocol changes require updating all implementations
    - Keep upload thresholds configurable, not hard-coded per backend
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..errors import ConnectivityError

if TYPE_CHECKING:
    from ..config import ServerConfig

LATEST_BACKUP_NAME = "latest-backup.json"
METADATA_NAME = "backup-meta.json"
HISTORICAL_PREFIX = "backup-"
SNAPSHOT_SUFFIX = ".json"


def historical_backup_name(when: datetime) -> str:
    """Name of the historical snapshot taken at `when`.

    The timestamp is ISO-8601 in UTC with millisecond precision and with
    ':' and '.' replaced by '-', e.g. backup-2026-10-17T09-30-00-123Z.json
    """
    when = when.astimezone(timezone.utc)
    iso = when.strftime("%Y-%m-%dT%H:%M:%S.") + f"{when.microsecond // 1000:03d}Z"
    return f"{HISTORICAL_PREFIX}{iso.replace(':', '-').replace('.', '-')}{SNAPSHOT_SUFFIX}"


def is_historical_name(name: str) -> bool:
    """Whether an object name is a rotatable historical snapshot."""
    return (
        name.startswith(HISTORICAL_PREFIX)
        and name.endswith(SNAPSHOT_SUFFIX)
        and name != METADATA_NAME
    )


def is_snapshot_name(name: str) -> bool:
    """Whether an object name holds a full snapshot (latest or historical)."""
    return name == LATEST_BACKUP_NAME or is_historical_name(name)


@dataclass(frozen=True)
class RemoteObjectHandle:
    """A file in the remote backup folder.

    Attributes:
        id: Backend identifier (drive item id, S3 key)
        name: Object name inside the folder
        size: Size in bytes
        last_modified: Last modification time (UTC)
    """

    id: str
    name: str
    size: int
    last_modified: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "size": self.size,
            "lastModified": self.last_modified.isoformat(),
        }


def newest_first(handles: list[RemoteObjectHandle]) -> list[RemoteObjectHandle]:
    """Sort handles by last-modified time, newest first."""
    return sorted(handles, key=lambda h: (h.last_modified, h.name), reverse=True)


@runtime_checkable
class TokenProvider(Protocol):
    """Supplies a bearer credential on demand."""

    async def get_token(self) -> str:
        """Return a valid bearer token.

        Raises:
            ConnectivityError: If no credential is available
        """
        ...


class StaticTokenProvider:
    """Holds the most recent token registered by the client.

    The web client acquires tokens interactively and posts them to the
    server; this provider simply hands the latest one out.
    """

    def __init__(self, token: str | None = None) -> None:
        self._token = token

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def set_token(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None

    async def get_token(self) -> str:
        if not self._token:
            raise ConnectivityError("No access token available")
        return self._token


@runtime_checkable
class RemoteTransport(Protocol):
    """Protocol for remote backup folder backends.

    All methods are async. Implementations raise ConnectivityError when
    the remote cannot be reached, TransportError on other non-success
    responses and NoBackupError when a downloaded object does not exist.
    """

    async def connect(self) -> None:
        """Open the underlying client."""
        ...

    async def close(self) -> None:
        """Release the underlying client."""
        ...

    async def check_connectivity(self) -> None:
        """Raise ConnectivityError if the remote is unusable."""
        ...

    async def ensure_folder(self) -> None:
        """Create the backup folder if it does not exist."""
        ...

    async def upload(self, name: str, payload: bytes) -> None:
        """Write an object, using an upload session for large payloads."""
        ...

    async def download(self, name: str) -> bytes:
        """Read an object's content."""
        ...

    async def list_backups(self) -> list[RemoteObjectHandle]:
        """Historical snapshots, newest first."""
        ...

    async def list_all(self) -> list[RemoteObjectHandle]:
        """Latest and historical snapshots, newest first."""
        ...

    async def delete(self, handle: RemoteObjectHandle) -> bool:
        """Remove one object. Returns False (and logs) on failure."""
        ...


def create_transport(
    config: ServerConfig,
    token_provider: TokenProvider | None = None,
) -> RemoteTransport:
    """Factory function to create a transport from configuration.

    Args:
        config: Server configuration
        token_provider: Bearer credential source (Graph backend only)

    Returns:
        Appropriate RemoteTransport implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import RemoteBackend
    from .graph import GraphTransport
    from .memory import InMemoryTransport
    from .s3 import S3Transport

    if config.remote_backend == RemoteBackend.GRAPH:
        provider = token_provider or StaticTokenProvider(config.graph.access_token)
        return GraphTransport(
            config.graph,
            provider,
            simple_upload_limit=config.backup.simple_upload_limit,
            chunk_size=config.backup.chunk_size,
        )
    elif config.remote_backend == RemoteBackend.S3:
        return S3Transport(
            config.s3,
            simple_upload_limit=config.backup.simple_upload_limit,
            chunk_size=config.backup.chunk_size,
        )
    elif config.remote_backend == RemoteBackend.MEMORY:
        return InMemoryTransport()
    else:
        raise ValueError(f"Unsupported remote backend: {config.remote_backend}")
