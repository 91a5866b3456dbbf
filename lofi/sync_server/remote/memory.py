"""
In-memory transport for tests and local development.

Keeps the backup folder in a dict and records every call so tests can
assert on upload counts and ordering.

Features:
    - Connectivity can be toggled (connected = False -> ConnectivityError)
    - Individual operations can be made to fail (fail_on)
    - Uploads can be held on an asyncio.Event to observe in-flight state
    - last_modified increases strictly with every write

Invariants:
    - Same contract as the Graph and S3 transports
    - Not persistent: the folder is lost when the process exits
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from ..errors import ConnectivityError, NoBackupError, TransportError
from .base import RemoteObjectHandle, is_historical_name, is_snapshot_name, newest_first

logger = logging.getLogger(__name__)

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


class InMemoryTransport:
    """RemoteTransport keeping objects in process memory.

    Example:
        >>> transport = InMemoryTransport()
        >>> await transport.upload("latest-backup.json", b"{}")
        >>> await transport.download("latest-backup.json")
        b'{}'
    """

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.modified: dict[str, datetime] = {}
        self.calls: list[tuple[str, str]] = []
        self.connected = True
        self.folder_exists = False
        self.fail_on: set[str] = set()
        self.upload_gate: asyncio.Event | None = None
        self._sequence = 0

    def _check(self, operation: str, name: str = "") -> None:
        self.calls.append((operation, name))
        if not self.connected:
            raise ConnectivityError("In-memory remote is offline", endpoint="memory://")
        if operation in self.fail_on:
            raise TransportError(f"Injected failure: {operation}", status_code=500, operation=operation)

    def _next_time(self) -> datetime:
        self._sequence += 1
        return _EPOCH + timedelta(seconds=self._sequence)

    def calls_for(self, operation: str) -> list[str]:
        """Object names passed to one operation, in call order."""
        return [name for op, name in self.calls if op == operation]

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def check_connectivity(self) -> None:
        self._check("check_connectivity")

    async def ensure_folder(self) -> None:
        self._check("ensure_folder")
        self.folder_exists = True

    async def upload(self, name: str, payload: bytes) -> None:
        self._check("upload", name)
        if self.upload_gate is not None:
            await self.upload_gate.wait()
        self.objects[name] = bytes(payload)
        self.modified[name] = self._next_time()

    async def download(self, name: str) -> bytes:
        self._check("download", name)
        if name not in self.objects:
            raise NoBackupError(name)
        return self.objects[name]

    def _handles(self) -> list[RemoteObjectHandle]:
        return [
            RemoteObjectHandle(id=name, name=name, size=len(data), last_modified=self.modified[name])
            for name, data in self.objects.items()
        ]

    async def list_backups(self) -> list[RemoteObjectHandle]:
        self._check("list_backups")
        return newest_first([h for h in self._handles() if is_historical_name(h.name)])

    async def list_all(self) -> list[RemoteObjectHandle]:
        self._check("list_all")
        return newest_first([h for h in self._handles() if is_snapshot_name(h.name)])

    async def delete(self, handle: RemoteObjectHandle) -> bool:
        try:
            self._check("delete", handle.name)
        except (ConnectivityError, TransportError) as e:
            logger.warning(f"Failed to delete {handle.name}: {e}")
            return False
        if handle.id not in self.objects:
            return False
        del self.objects[handle.id]
        del self.modified[handle.id]
        return True
