"""
Backup orchestrator for one session.

The orchestrator owns the backup state of one account and decides when
the dataset is pushed to or pulled from the remote backup folder:

    notify_mutation() --debounce--> attempt_backup("mutation")
    periodic tick    ------------> attempt_backup("periodic")
    manual_backup()  ------------> attempt_backup("manual")

A backup attempt:
    1. ensure_folder()
    2. export the owner's dataset
    3. upload latest-backup.json and backup-<timestamp>.json concurrently
    4. upload backup-meta.json
    5. rotate historical snapshots (best effort)

Startup (initialize()) runs one state machine with fixed precedence:
    connectivity -> local data -> legacy data -> remote metadata

Invariants:
    - At most one backup or restore is in flight; triggers that arrive
      meanwhile are dropped, not queued
    - The in-flight guard is checked and set before the first await
    - backup-meta.json is written only after both snapshot uploads succeed
    - A pending restore prompt suppresses automatic backups, so an empty
      device never overwrites a remote dataset before the user decides
    - State changes only through _transition()

How to change safely:
    - Keep new triggers routed through attempt_backup()
    - Never await between the busy check and the status change
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import BackupConfig
from ..errors import (
    BackupError,
    BusyError,
    ConnectivityError,
    NoBackupError,
    RotationError,
    TransportError,
    ValidationError,
)
from ..migrate.legacy import LegacyMigrator, MigrationResult
from ..remote.base import (
    LATEST_BACKUP_NAME,
    METADATA_NAME,
    RemoteObjectHandle,
    RemoteTransport,
    historical_backup_name,
)
from ..snapshot.codec import BackupMetadata, SnapshotCodec
from ..snapshot.importer import ImportResult, RestoreImporter
from ..snapshot.rotation import RotationPolicy
from ..store.canonical_store import CanonicalStore
from .scheduler import AsyncioClock, Clock, CoalescingScheduler, PeriodicTimer, TimerHandle

logger = logging.getLogger(__name__)


class BackupStatus(str, Enum):
    IDLE = "idle"
    BACKING_UP = "backing-up"
    RESTORING = "restoring"
    ERROR = "error"
    SUCCESS = "success"


_BUSY = (BackupStatus.BACKING_UP, BackupStatus.RESTORING)


@dataclass(frozen=True)
class BackupState:
    """Observable backup state of a session.

    Attributes:
        status: Current phase
        last_backup_time: When the last backup (or restore) completed
        last_backup_error: Message of the last failure, cleared on success
        is_remote_connected: Whether the remote answered the last request
    """

    status: BackupStatus = BackupStatus.IDLE
    last_backup_time: datetime | None = None
    last_backup_error: str | None = None
    is_remote_connected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "lastBackupTime": self.last_backup_time.isoformat() if self.last_backup_time else None,
            "lastBackupError": self.last_backup_error,
            "backupInProgress": self.status in _BUSY,
            "isConnected": self.is_remote_connected,
        }


class StartupOutcome(str, Enum):
    OFFLINE = "offline"
    REFRESHED = "refreshed"
    MIGRATED = "migrated"
    RESTORE_AVAILABLE = "restore-available"
    EMPTY = "empty"


@dataclass(frozen=True)
class StartupResult:
    outcome: StartupOutcome
    metadata: BackupMetadata | None = None
    migration: MigrationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "remoteMeta": self.metadata.to_dict() if self.metadata else None,
            "migratedBooks": self.migration.book_count if self.migration else 0,
        }


class BackupOrchestrator:
    """Schedules and runs backups, restores and the startup sequence.

    One instance per session; all collaborators are injected.

    Example:
        >>> orchestrator = BackupOrchestrator(store, transport, owner="user-1")
        >>> orchestrator.init()
        >>> result = await orchestrator.initialize()
        >>> orchestrator.notify_mutation()
        >>> await orchestrator.dispose()
    """

    def __init__(
        self,
        store: CanonicalStore,
        transport: RemoteTransport,
        owner: str,
        config: BackupConfig | None = None,
        codec: SnapshotCodec | None = None,
        importer: RestoreImporter | None = None,
        migrator: LegacyMigrator | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.owner = owner
        self.config = config or BackupConfig()
        self.clock = clock or AsyncioClock()
        self.codec = codec or SnapshotCodec(now=self.clock.now)
        self.importer = importer or RestoreImporter()
        self.migrator = migrator
        self.rotation = RotationPolicy(keep=self.config.max_backups)

        self._state = BackupState()
        self._generation = 0
        self._reset_handle: TimerHandle | None = None
        self._restore_pending = False
        self._initialized = False
        self._disposed = False
        self._inflight: asyncio.Task | None = None
        self._startup: asyncio.Task | None = None

        self._debounce = CoalescingScheduler(
            self.clock, self.config.debounce_seconds, self._on_debounce, name="mutation-debounce"
        )
        self._periodic = PeriodicTimer(
            self.clock, self.config.periodic_interval_seconds, self._on_tick, name="periodic-backup"
        )

    # -- state -----------------------------------------------------------

    @property
    def state(self) -> BackupState:
        return self._state

    @property
    def restore_pending(self) -> bool:
        return self._restore_pending

    @property
    def busy(self) -> bool:
        return self._state.status in _BUSY

    def _transition(self, status: BackupStatus, **changes: Any) -> None:
        previous = self._state.status
        self._state = replace(self._state, status=status, **changes)
        self._generation += 1

        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None
        if status is BackupStatus.SUCCESS:
            generation = self._generation
            self._reset_handle = self.clock.call_later(
                self.config.success_reset_seconds, lambda: self._reset_success(generation)
            )

        if previous is not status:
            logger.debug(f"Backup status {previous.value} -> {status.value}")

    def _reset_success(self, generation: int) -> None:
        self._reset_handle = None
        if self._generation == generation and self._state.status is BackupStatus.SUCCESS:
            self._transition(BackupStatus.IDLE)

    def _mark_disconnected(self, error: ConnectivityError) -> None:
        if self._state.is_remote_connected:
            logger.warning(f"Remote backup folder unreachable: {error.message}")
        self._state = replace(self._state, is_remote_connected=False)

    def _mark_connected(self) -> None:
        self._state = replace(self._state, is_remote_connected=True)

    # -- lifecycle -------------------------------------------------------

    def init(self) -> None:
        """Arm the periodic safety-net timer."""
        if self._initialized:
            return
        self._initialized = True
        self._periodic.start()
        logger.info(
            "Backup orchestrator started",
            extra={
                "owner": self.owner,
                "debounce_seconds": self.config.debounce_seconds,
                "interval_seconds": self.config.periodic_interval_seconds,
            },
        )

    async def dispose(self) -> None:
        """Stop all timers and wait for in-flight work to finish."""
        self._disposed = True
        self._debounce.cancel()
        self._periodic.stop()
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

        await self.wait_idle()
        logger.info("Backup orchestrator stopped", extra={"owner": self.owner})

    async def wait_idle(self) -> None:
        """Wait until fired timers and in-flight operations have finished."""
        await self._debounce.drain()
        await self._periodic.drain()
        pending = [t for t in (self._inflight, self._startup) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- triggers --------------------------------------------------------

    def notify_mutation(self) -> None:
        """Record a local write; a backup follows after the quiet period."""
        if self._disposed:
            return
        self._debounce.arm()

    async def _on_debounce(self) -> None:
        if self._restore_pending:
            logger.info("Restore prompt pending, skipping mutation-triggered backup")
            return
        await self.attempt_backup("mutation")

    async def _on_tick(self) -> None:
        if self._restore_pending:
            return
        await self.attempt_backup("periodic")

    async def manual_backup(self) -> BackupMetadata | None:
        return await self.attempt_backup("manual")

    async def attempt_backup(self, reason: str = "manual") -> BackupMetadata | None:
        """Run one backup unless a backup or restore is already in flight.

        Returns:
            Metadata of the written backup, or None when the attempt was
            skipped or failed (see state.last_backup_error)
        """
        if self._disposed or self.busy:
            logger.debug(f"Backup ({reason}) skipped: busy or disposed")
            return None

        self._transition(BackupStatus.BACKING_UP)
        task = asyncio.get_running_loop().create_task(self._run_backup(reason))
        self._inflight = task
        return await asyncio.shield(task)

    async def _run_backup(self, reason: str) -> BackupMetadata | None:
        try:
            return await self._backup_steps(reason)
        finally:
            if self._state.status is BackupStatus.BACKING_UP:
                self._transition(BackupStatus.ERROR, last_backup_error=f"Backup ({reason}) interrupted")

    async def _backup_steps(self, reason: str) -> BackupMetadata | None:
        logger.info(f"Starting backup ({reason})", extra={"owner": self.owner, "reason": reason})
        try:
            await self.transport.ensure_folder()
            snapshot = await self.codec.export(self.store, self.owner)
            payload = self.codec.encode(snapshot)

            when = self.clock.now()
            results = await asyncio.gather(
                self.transport.upload(LATEST_BACKUP_NAME, payload),
                self.transport.upload(historical_backup_name(when), payload),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result

            metadata = self.codec.build_metadata(snapshot, self.owner, when)
            await self.transport.upload(METADATA_NAME, metadata.encode())
        except ConnectivityError as e:
            self._mark_disconnected(e)
            self._transition(BackupStatus.ERROR, last_backup_error=e.message)
            return None
        except Exception as e:
            logger.error(f"Backup ({reason}) failed: {e}", exc_info=True)
            self._transition(BackupStatus.ERROR, last_backup_error=str(e))
            return None

        self._mark_connected()
        try:
            await self._rotate()
        except BackupError as e:
            logger.warning(f"Backup rotation failed: {e}")
        except Exception as e:
            error = RotationError(f"Could not list historical backups: {e!r}")
            logger.warning(f"Backup rotation failed: {error}", exc_info=True)

        self._transition(BackupStatus.SUCCESS, last_backup_time=when, last_backup_error=None)
        logger.info(
            f"Backup ({reason}) completed",
            extra={
                "owner": self.owner,
                "bytes": len(payload),
                "book_count": metadata.book_count,
                "total_records": metadata.total_records,
            },
        )
        return metadata

    async def _rotate(self) -> None:
        """Delete historical snapshots beyond the retention limit.

        Raises:
            RotationError: If any stale snapshot could not be deleted
        """
        _, stale = self.rotation.plan(await self.transport.list_backups())
        failed = []
        for handle in stale:
            if not await self.transport.delete(handle):
                failed.append(handle.name)
        if failed:
            raise RotationError(f"Could not delete {len(failed)} stale backup(s): {failed}")
        if stale:
            logger.info(f"Rotated {len(stale)} stale backup(s)")

    # -- restore ---------------------------------------------------------

    async def restore(self, name: str = LATEST_BACKUP_NAME) -> ImportResult:
        """Replace the local dataset with a remote snapshot.

        Raises:
            BusyError: If a backup or restore is in flight
            NoBackupError: If the snapshot does not exist
            ValidationError: If the snapshot is malformed (store untouched)
            ConnectivityError: If the remote is unreachable
        """
        if self._disposed or self.busy:
            raise BusyError()

        self._transition(BackupStatus.RESTORING)
        task = asyncio.get_running_loop().create_task(self._run_restore(name))
        self._inflight = task
        return await asyncio.shield(task)

    async def _run_restore(self, name: str) -> ImportResult:
        logger.info(f"Restoring from {name}", extra={"owner": self.owner})
        try:
            raw = await self.transport.download(name)
            snapshot = self.codec.decode(raw)
            result = await self.importer.restore(self.store, snapshot, self.owner)
        except ConnectivityError as e:
            self._mark_disconnected(e)
            self._transition(BackupStatus.ERROR, last_backup_error=e.message)
            raise
        except Exception as e:
            logger.error(f"Restore from {name} failed: {e}")
            self._transition(BackupStatus.ERROR, last_backup_error=str(e))
            raise

        self._restore_pending = False
        self._mark_connected()
        self._transition(
            BackupStatus.IDLE,
            last_backup_time=self.clock.now(),
            last_backup_error=None,
        )
        return result

    def dismiss_restore(self) -> None:
        """The user declined the restore prompt; automatic backups resume."""
        if self._restore_pending:
            logger.info("Restore prompt dismissed", extra={"owner": self.owner})
        self._restore_pending = False

    async def import_document(self, raw: Any) -> ImportResult:
        """Import a client-supplied export (e.g. a legacy browser database).

        Raises:
            BusyError: If a backup or restore is in flight
            ValidationError: If the document is malformed (store untouched)
        """
        if self._disposed or self.busy:
            raise BusyError()

        self._transition(BackupStatus.RESTORING)
        try:
            snapshot = self.codec.decode(raw)
            result = await self.importer.restore(self.store, snapshot, self.owner)
        except Exception as e:
            logger.error(f"Import failed: {e}")
            self._transition(BackupStatus.ERROR, last_backup_error=str(e))
            raise

        self._restore_pending = False
        self._transition(BackupStatus.IDLE, last_backup_error=None)
        self.notify_mutation()
        return result

    # -- startup ---------------------------------------------------------

    async def initialize(self) -> StartupResult:
        """Run the startup sequence; concurrent callers share one run."""
        if self._startup is None or self._startup.done():
            self._startup = asyncio.get_running_loop().create_task(self._run_startup())
        return await asyncio.shield(self._startup)

    async def _run_startup(self) -> StartupResult:
        try:
            await self.transport.check_connectivity()
        except ConnectivityError as e:
            self._mark_disconnected(e)
            logger.info("Startup: remote unreachable, working offline")
            return StartupResult(StartupOutcome.OFFLINE)
        self._mark_connected()

        # Decide on the settled dataset, not one a running backup is reading
        if self._inflight is not None and not self._inflight.done():
            logger.info("Startup: waiting for the in-flight backup or restore")
            await asyncio.gather(self._inflight, return_exceptions=True)

        if await self.store.has_data(self.owner):
            logger.info("Startup: local data present, refreshing remote backup")
            await self.attempt_backup("startup")
            return StartupResult(StartupOutcome.REFRESHED)

        if self.migrator is not None and self.migrator.has_legacy_data():
            if self.busy:
                logger.warning("Startup: legacy data present but an import is running, migration deferred")
            else:
                migration = await self._migrate_legacy()
                if migration is not None and migration.migrated:
                    await self.attempt_backup("migration")
                    return StartupResult(StartupOutcome.MIGRATED, migration=migration)

        metadata = await self.get_remote_metadata()
        if metadata is not None and metadata.book_count >= 1:
            logger.info(
                "Startup: remote backup available",
                extra={"book_count": metadata.book_count, "timestamp": metadata.timestamp},
            )
            self._restore_pending = True
            return StartupResult(StartupOutcome.RESTORE_AVAILABLE, metadata=metadata)

        logger.info("Startup: no local, legacy or remote data")
        return StartupResult(StartupOutcome.EMPTY, metadata=metadata)

    async def _migrate_legacy(self) -> MigrationResult | None:
        self._transition(BackupStatus.RESTORING)
        try:
            result = await self.migrator.migrate(self.store, self.owner)
        except Exception as e:
            logger.error(f"Legacy migration failed: {e}", exc_info=True)
            self._transition(BackupStatus.IDLE)
            return None
        self._transition(BackupStatus.IDLE)
        return result

    # -- queries ---------------------------------------------------------

    def get_status(self) -> dict[str, Any]:
        status = self._state.to_dict()
        status["restorePending"] = self._restore_pending
        return status

    async def has_local_data(self) -> bool:
        return await self.store.has_data(self.owner)

    async def get_remote_metadata(self) -> BackupMetadata | None:
        """Metadata of the latest remote backup; None when absent or unreachable."""
        try:
            raw = await self.transport.download(METADATA_NAME)
        except NoBackupError:
            return None
        except ConnectivityError as e:
            self._mark_disconnected(e)
            return None
        except TransportError as e:
            logger.warning(f"Could not read remote backup metadata: {e}")
            return None

        try:
            return BackupMetadata.from_dict(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"Remote backup metadata is malformed: {e}")
            return None

    async def list_remote_backups(self) -> list[RemoteObjectHandle]:
        """Latest and historical snapshots, newest first."""
        try:
            return await self.transport.list_all()
        except ConnectivityError as e:
            self._mark_disconnected(e)
            raise
