"""
Backup routes for the Lofi HTTP API.

Mounted under /api/v1/backup. The web client registers its bearer token,
reports local writes and drives restore prompts through these endpoints;
the actual work is delegated to the session's BackupOrchestrator.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..errors import ValidationError
from ..orchestrator.backup import BackupOrchestrator, BackupStatus
from ..remote.base import LATEST_BACKUP_NAME, StaticTokenProvider, is_snapshot_name
from ..store.schema import BOOKS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backup", tags=["Backup"])


# --- Request Models ---


class TokenRequest(BaseModel):
    """Bearer token registered by the client after sign-in."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken", min_length=1, description="Bearer token")


class TriggerRequest(BaseModel):
    """Manual backup request."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str | None = Field(None, alias="accessToken", description="Optional fresh token")


class RestoreRequest(BaseModel):
    """Restore request; defaults to the latest snapshot."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str = Field(LATEST_BACKUP_NAME, description="Snapshot object name")
    access_token: str | None = Field(None, alias="accessToken", description="Optional fresh token")


# --- Dependencies ---


def get_orchestrator(request: Request) -> BackupOrchestrator:
    """Get the session orchestrator from app state."""
    return request.app.state.orchestrator


def get_token_provider(request: Request) -> StaticTokenProvider:
    return request.app.state.token_provider


# --- Routes ---


@router.get("/status")
async def get_status(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return orchestrator.get_status()


@router.get("/has-data")
async def has_data(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    """Whether the session owner has local data (drives the first-load restore prompt)."""
    count = await orchestrator.store.count(BOOKS.key, orchestrator.owner)
    return {"hasData": count > 0, "bookCount": count}


@router.get("/remote-meta")
async def get_remote_meta(
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | None:
    metadata = await orchestrator.get_remote_metadata()
    return metadata.to_dict() if metadata else None


@router.post("/token")
async def register_token(
    body: TokenRequest,
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
    tokens: StaticTokenProvider = Depends(get_token_provider),
) -> dict[str, Any]:
    """Register the bearer token, then run the startup sequence."""
    tokens.set_token(body.access_token)
    result = await orchestrator.initialize()
    return {"ok": True, **result.to_dict()}


@router.post("/trigger")
async def trigger_backup(
    body: TriggerRequest | None = None,
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
    tokens: StaticTokenProvider = Depends(get_token_provider),
) -> Any:
    if body is not None and body.access_token:
        tokens.set_token(body.access_token)

    if orchestrator.busy:
        return {"ok": True, "message": "Backup already in progress"}

    metadata = await orchestrator.manual_backup()
    state = orchestrator.state
    if metadata is None and state.status is BackupStatus.ERROR:
        return JSONResponse(
            status_code=503 if not state.is_remote_connected else 500,
            content={"error": state.last_backup_error, "error_code": "BACKUP_FAILED"},
        )
    if metadata is None:
        return {"ok": True, "message": "Backup already in progress"}
    return {"ok": True, "lastBackupTime": metadata.timestamp, "metadata": metadata.to_dict()}


@router.post("/notify-mutation")
async def notify_mutation(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    orchestrator.notify_mutation()
    return {"ok": True}


@router.get("/list")
async def list_backups(
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    handles = await orchestrator.list_remote_backups()
    return [h.to_dict() for h in handles]


@router.post("/restore")
async def restore(
    body: RestoreRequest | None = None,
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
    tokens: StaticTokenProvider = Depends(get_token_provider),
) -> dict[str, Any]:
    body = body or RestoreRequest()
    if body.access_token:
        tokens.set_token(body.access_token)
    if not is_snapshot_name(body.filename):
        raise ValidationError(f"Not a snapshot name: {body.filename}")

    result = await orchestrator.restore(body.filename)
    return result.to_dict()


@router.post("/dismiss-restore")
async def dismiss_restore(orchestrator: BackupOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    orchestrator.dismiss_restore()
    return {"ok": True}


@router.post("/import-local")
async def import_local(
    document: dict[str, Any] = Body(...),
    orchestrator: BackupOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Import a dataset exported by the client (e.g. the legacy browser database)."""
    result = await orchestrator.import_document(document)
    logger.info("Import-local succeeded", extra={"book_count": result.book_count})
    return result.to_dict()
