"""
FastAPI application factory for the Lofi sync server.

This module creates the FastAPI app with:
- CORS configuration for the web client
- Session lifecycle: canonical store, remote transport and orchestrator
- Backup routes under /api/v1/backup
- Mapping of sync engine errors to HTTP status codes
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..errors import (
    BackupError,
    BusyError,
    ConnectivityError,
    NoBackupError,
    ValidationError,
)
from ..migrate.legacy import LegacyMigrator
from ..orchestrator.backup import BackupOrchestrator
from ..orchestrator.scheduler import Clock
from ..remote.base import RemoteTransport, StaticTokenProvider, create_transport
from ..store.canonical_store import CanonicalStore
from .routes import router

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[BackupError], int], ...] = (
    (ValidationError, 400),
    (NoBackupError, 404),
    (BusyError, 409),
    (ConnectivityError, 503),
)


def status_for(error: BackupError) -> int:
    """HTTP status code for a sync engine error."""
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status
    return 500


async def backup_error_handler(request: Request, exc: BackupError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"Request failed: {exc}", extra={"path": request.url.path, "code": exc.code})
    return JSONResponse(
        status_code=status,
        content={"error": exc.message, "error_code": exc.code, "details": exc.details},
    )


def create_app(
    config: ServerConfig | None = None,
    transport: RemoteTransport | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Server configuration (defaults to the environment)
        transport: Remote transport override (tests pass an in-memory one)
        clock: Clock override for the orchestrator timers
    """
    config = config or ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage the session's store, transport and orchestrator."""
        token_provider = StaticTokenProvider(config.graph.access_token)
        remote = transport or create_transport(config, token_provider)

        store = CanonicalStore(
            config.storage.db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
        await store.initialize()
        await remote.connect()

        orchestrator = BackupOrchestrator(
            store,
            remote,
            owner=config.backup.owner_identity,
            config=config.backup,
            migrator=LegacyMigrator(config.storage.legacy_db_path),
            clock=clock,
        )
        orchestrator.init()

        app.state.config = config
        app.state.store = store
        app.state.transport = remote
        app.state.token_provider = token_provider
        app.state.orchestrator = orchestrator

        yield

        await orchestrator.dispose()
        await remote.close()

    app = FastAPI(
        title="Lofi Sync",
        description="Backup, restore and migration of the Lofi Books workspace.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.http.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BackupError, backup_error_handler)

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "lofi-sync", "version": __version__}

    return app
