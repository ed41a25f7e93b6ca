"""Live email API endpoints — thin wrappers around LiveEmailService."""

import logging
from datetime import datetime
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from mailkan.api.auth import get_service, require_auth
from mailkan.models.message import Message, MessageMetadata, utcnow
from mailkan.services.live_sync import LiveEmailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emails", tags=["emails"], dependencies=[Depends(require_auth)])


class LiveEmailsResponse(BaseModel):
    success: bool = True
    emails: list[Message]
    total_count: int
    fetched_at: datetime
    duration_ms: int
    partial: bool
    folders: list[dict]
    is_live: bool = True


class FolderEmailsResponse(BaseModel):
    success: bool = True
    emails: list[Message]
    column: str
    imap_folder: str
    count: int
    source: str
    stale: bool
    error: Optional[str] = None
    fetched_at: datetime = Field(default_factory=utcnow)


class MoveRequest(BaseModel):
    uid: int
    from_column: str = Field(alias="fromColumn")
    to_column: str = Field(alias="toColumn")
    subject: Optional[str] = None
    sender: Optional[str] = Field(default=None, alias="from")

    model_config = ConfigDict(populate_by_name=True)


class DeleteRequest(BaseModel):
    column: str
    subject: Optional[str] = None
    sender: Optional[str] = Field(default=None, alias="from")

    model_config = ConfigDict(populate_by_name=True)


class InvalidateRequest(BaseModel):
    folders: Union[list[str], str]


class ColumnRequest(BaseModel):
    column: str


# === LIVE EMAIL ENDPOINTS ===


@router.get("/live", response_model=LiveEmailsResponse)
async def live_emails(refresh: bool = False, service: LiveEmailService = Depends(get_service)):
    """Fetch all three columns live (cached for the configured TTL)."""
    result = await service.fetch_all_live(force_refresh=refresh)
    return LiveEmailsResponse(
        emails=result.messages,
        total_count=len(result.messages),
        fetched_at=result.fetched_at,
        duration_ms=result.duration_ms,
        partial=result.partial,
        folders=[f.summary() for f in result.folders],
    )


@router.get("/live/{column}", response_model=FolderEmailsResponse)
async def live_column(column: str, refresh: bool = False, service: LiveEmailService = Depends(get_service)):
    """Fetch a single column live."""
    result = await service.fetch_folder_live(column, force_refresh=refresh)
    if result.source == "unavailable":
        raise HTTPException(status_code=503, detail=result.error)
    return FolderEmailsResponse(
        emails=result.messages,
        column=column,
        imap_folder=result.folder,
        count=len(result.messages),
        source=result.source,
        stale=result.stale,
        error=result.error,
    )


@router.post("/live/move")
async def live_move(body: MoveRequest, service: LiveEmailService = Depends(get_service)):
    """Move a message between columns by UID."""
    metadata = MessageMetadata(subject=body.subject, sender=body.sender)
    outcome = await service.move_live(body.uid, body.from_column, body.to_column, metadata)
    return {
        "success": outcome.success,
        "uid": body.uid,
        "new_uid": outcome.new_uid,
        "from_column": body.from_column,
        "to_column": body.to_column,
        "state": outcome.state.value,
        "reason": outcome.reason,
        "timestamp": utcnow(),
    }


@router.delete("/live/{uid}")
async def live_delete(uid: int, body: DeleteRequest, service: LiveEmailService = Depends(get_service)):
    """Delete a message by UID from a column's folder."""
    metadata = MessageMetadata(subject=body.subject, sender=body.sender)
    outcome = await service.delete_live(uid, body.column, metadata)
    return {
        "success": outcome.success,
        "uid": uid,
        "column": body.column,
        "reason": outcome.reason,
        "timestamp": utcnow(),
    }


@router.get("/debug/folder/{column}")
async def debug_folder(column: str, service: LiveEmailService = Depends(get_service)):
    """Force a live fetch of one column and show the first few messages with the cache state."""
    result = await service.fetch_folder_live(column, force_refresh=True)
    return {
        "success": result.source != "unavailable",
        "column": column,
        "imap_folder": result.folder,
        "source": result.source,
        "error": result.error,
        "count": len(result.messages),
        "sample": [m.model_dump(mode="json") for m in result.messages[:5]],
        "cache": service.cache_status(),
        "timestamp": utcnow(),
    }


# === BOARD ===


@router.get("/board")
async def board(service: LiveEmailService = Depends(get_service)):
    """The persisted board, grouped by column."""
    return {column: [m.model_dump(mode="json") for m in messages] for column, messages in service.board().items()}


@router.get("/stats")
async def stats(service: LiveEmailService = Depends(get_service)):
    return service.stats()


@router.post("/{message_id}/move", response_model=Message)
async def move_card(message_id: str, body: ColumnRequest, service: LiveEmailService = Depends(get_service)):
    """Move a board card to another column (server first, then the snapshot)."""
    return await service.move_message(message_id, body.column)


@router.delete("/{message_id}")
async def archive_card(message_id: str, service: LiveEmailService = Depends(get_service)):
    """Archive a card: delete it on the server and drop it from the board."""
    outcome = await service.archive_message(message_id)
    return {"success": True, "id": message_id, "server_deleted": outcome.success}


# === CACHE MANAGEMENT ===


@router.get("/cache/status")
async def cache_status(service: LiveEmailService = Depends(get_service)):
    return {"success": True, "cache": service.cache_status(), "timestamp": utcnow()}


@router.post("/cache/clear")
async def cache_clear(service: LiveEmailService = Depends(get_service)):
    removed = service.cache_clear()
    logger.info("Cache cleared by user request")
    return {"success": True, "removed": removed, "timestamp": utcnow()}


@router.post("/cache/invalidate")
async def cache_invalidate(body: InvalidateRequest, service: LiveEmailService = Depends(get_service)):
    removed = service.cache_invalidate(body.folders)
    return {"success": True, "removed": removed, "timestamp": utcnow()}


# === CONNECTION / SETUP ===


@router.get("/test/connection")
async def test_connection(service: LiveEmailService = Depends(get_service)):
    probe = await service.test_connection()
    if not probe.connected:
        raise HTTPException(status_code=503, detail=probe.error)
    return {"success": True, "connected": True, "duration_ms": probe.duration_ms, "timestamp": utcnow()}


@router.post("/setup/folders")
async def setup_folders(service: LiveEmailService = Depends(get_service)):
    created = await service.ensure_folders()
    return {"success": True, "created": created, "timestamp": utcnow()}
