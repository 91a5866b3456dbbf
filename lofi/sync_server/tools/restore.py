"""
Restore CLI tool for Lofi Books.

Rebuilds an account's dataset in the canonical store from:
1. A snapshot file on disk (--file), or
2. The configured remote backup folder (latest-backup.json by default,
   or a named historical snapshot with --name)

Usage:
    lofi-restore --owner <identity> [--file <path> | --name <object>] [options]
    lofi-restore --list

Remote access uses the same environment configuration as the server
(REMOTE_BACKEND, GRAPH_*, S3_*).

Invariants:
    - The snapshot is fully decoded and validated before the store is opened
    - The restore is a single transaction; a failure leaves the store unchanged
    - --dry-run never opens the canonical store

How to change safely:
    - Keep the restore path identical to the server's (codec + importer)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path

from ..config import ServerConfig
from ..remote.base import (
    LATEST_BACKUP_NAME,
    RemoteObjectHandle,
    RemoteTransport,
    StaticTokenProvider,
    create_transport,
)
from ..snapshot.codec import SnapshotCodec
from ..snapshot.importer import RestoreImporter
from ..store.canonical_store import CanonicalStore

logger = logging.getLogger(__name__)


@dataclass
class RestoreConfig:
    """Configuration for restore operation.

    Attributes:
        owner: Account whose dataset is replaced
        db_path: Canonical SQLite database
        source_file: Local snapshot file; the remote is used when None
        remote_name: Remote snapshot object name
        dry_run: Decode and validate only
        verify: Run integrity checks after the restore
    """

    owner: str
    db_path: Path
    source_file: Path | None = None
    remote_name: str = LATEST_BACKUP_NAME
    dry_run: bool = False
    verify: bool = True


@dataclass
class RestoreResult:
    """Result of restore operation."""

    success: bool
    source: str
    book_count: int = 0
    total_records: int = 0
    duration_ms: int = 0
    error: str | None = None


class RestoreTool:
    """Restores a snapshot into the canonical store.

    Example:
        >>> tool = RestoreTool(config, transport)
        >>> result = await tool.restore()
        >>> print(f"Restored {result.book_count} books")
    """

    def __init__(self, config: RestoreConfig, transport: RemoteTransport | None = None) -> None:
        self.config = config
        self.transport = transport
        self.codec = SnapshotCodec()
        self.importer = RestoreImporter()

    @property
    def source(self) -> str:
        if self.config.source_file is not None:
            return str(self.config.source_file)
        return f"remote:{self.config.remote_name}"

    async def _read_snapshot(self) -> bytes:
        if self.config.source_file is not None:
            return self.config.source_file.read_bytes()
        if self.transport is None:
            raise ValueError("No snapshot file given and no remote configured")
        await self.transport.connect()
        try:
            return await self.transport.download(self.config.remote_name)
        finally:
            await self.transport.close()

    async def list_remote(self) -> list[RemoteObjectHandle]:
        """Snapshots in the remote backup folder, newest first."""
        if self.transport is None:
            raise ValueError("No remote configured")
        await self.transport.connect()
        try:
            return await self.transport.list_all()
        finally:
            await self.transport.close()

    async def restore(self) -> RestoreResult:
        """Execute the restore operation.

        Returns:
            RestoreResult indicating success/failure
        """
        start_time = time.time()

        try:
            logger.info(f"Starting restore for {self.config.owner or '<default owner>'} from {self.source}")
            snapshot = self.codec.decode(await self._read_snapshot())

            if self.config.dry_run:
                logger.info("Dry run: snapshot is valid, store not modified", extra={"counts": snapshot.counts()})
                return RestoreResult(
                    success=True,
                    source=self.source,
                    book_count=snapshot.book_count,
                    total_records=snapshot.total_records,
                    duration_ms=int((time.time() - start_time) * 1000),
                )

            store = CanonicalStore(self.config.db_path)
            await store.initialize()
            result = await self.importer.restore(store, snapshot, self.config.owner)

            if self.config.verify:
                await store.integrity_check()
                logger.info("Database integrity check passed")

            return RestoreResult(
                success=True,
                source=self.source,
                book_count=result.book_count,
                total_records=result.total_records,
                duration_ms=int((time.time() - start_time) * 1000),
            )

        except Exception as e:
            logger.error(f"Restore failed: {e}", exc_info=True)
            return RestoreResult(
                success=False,
                source=self.source,
                duration_ms=int((time.time() - start_time) * 1000),
                error=str(e),
            )


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for restore tool."""
    parser = argparse.ArgumentParser(description="Restore a Lofi Books dataset from a backup snapshot")
    parser.add_argument("--owner", help="Account identity (default: BACKUP_OWNER)")
    parser.add_argument("--data-dir", help="Directory holding the canonical database (default: DATA_DIR)")
    parser.add_argument("--file", type=Path, help="Restore from a local snapshot file")
    parser.add_argument("--name", default=LATEST_BACKUP_NAME, help="Remote snapshot object name")
    parser.add_argument("--access-token", help="Bearer token for the Graph backend")
    parser.add_argument("--list", action="store_true", help="List remote snapshots and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate only, don't make changes")
    parser.add_argument("--no-verify", action="store_true", help="Skip verification")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        server_config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    storage = server_config.storage
    if args.data_dir:
        storage = replace(storage, data_dir=args.data_dir)

    transport = None
    if args.file is None or args.list:
        token = args.access_token or server_config.graph.access_token
        transport = create_transport(server_config, StaticTokenProvider(token))

    config = RestoreConfig(
        owner=args.owner if args.owner is not None else server_config.backup.owner_identity,
        db_path=storage.db_path,
        source_file=args.file,
        remote_name=args.name,
        dry_run=args.dry_run,
        verify=not args.no_verify,
    )
    tool = RestoreTool(config, transport)

    if args.list:
        handles = asyncio.run(tool.list_remote())
        for handle in handles:
            print(f"{handle.name}\t{handle.size}\t{handle.last_modified.isoformat()}")
        sys.exit(0)

    result = asyncio.run(tool.restore())

    if result.success:
        print("Restore completed successfully" if not config.dry_run else "Snapshot is valid (dry run)")
        print(f"  Source: {result.source}")
        print(f"  Books: {result.book_count}")
        print(f"  Records: {result.total_records}")
        print(f"  Duration: {result.duration_ms}ms")
        sys.exit(0)
    else:
        print(f"Restore failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
