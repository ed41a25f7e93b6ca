"""Mailkan — FastAPI Application."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mailkan.api import live
from mailkan.config import settings
from mailkan.exceptions import (
    ImapAuthError,
    ImapConnectionError,
    ImapProtocolError,
    KanbanError,
    MessageNotFoundError,
    MoveFailedError,
    ValidationError,
)
from mailkan.services.live_sync import LiveEmailService

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("mailkan")

_STATUS_CODES = [
    (ValidationError, 400),
    (MessageNotFoundError, 404),
    (ImapConnectionError, 503),
    (ImapAuthError, 502),
    (ImapProtocolError, 502),
    (MoveFailedError, 502),
]


def status_for(error: KanbanError) -> int:
    for error_type, status in _STATUS_CODES:
        if isinstance(error, error_type):
            return status
    return 500


async def periodic_sync(service: LiveEmailService, interval_minutes: float):
    """Background task that refreshes the board on a schedule."""
    while True:
        try:
            await asyncio.sleep(interval_minutes * 60)
            result = await service.fetch_all_live(force_refresh=True)
            logger.info(f"Periodic sync: {len(result.messages)} emails (partial: {result.partial})")

        except asyncio.CancelledError:
            logger.info("Periodic sync task cancelled")
            break
        except Exception as e:
            logger.error(f"Periodic sync error: {e}")
            await asyncio.sleep(30)  # Brief pause on error before retry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    service: LiveEmailService = app.state.service
    config = service.settings

    # Startup
    logger.info("=" * 60)
    logger.info("Mailkan starting up")
    logger.info(f"IMAP: {config.imap_host}:{config.imap_port} (TLS: {config.imap_use_ssl})")
    logger.info(f"Board snapshot: {config.data_file}")
    logger.info(f"Cache TTL: {config.cache_ttl_seconds}s")
    logger.info("=" * 60)

    await service.start()

    # Best effort: the board serves the snapshot without IMAP
    if config.imap_configured:
        try:
            await service.ensure_folders()
        except KanbanError as e:
            logger.warning(f"Could not ensure kanban folders at startup: {e}")
            logger.warning("Use POST /api/emails/setup/folders once the server is reachable")

    sync_task: Optional[asyncio.Task] = None
    if config.sync_interval_minutes > 0:
        sync_task = asyncio.create_task(periodic_sync(service, config.sync_interval_minutes))
        logger.info("Periodic sync task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if sync_task:
        sync_task.cancel()
        try:
            await sync_task
        except asyncio.CancelledError:
            pass
    await service.close()
    logger.info("Shutdown complete")


def create_app(service: Optional[LiveEmailService] = None) -> FastAPI:
    app = FastAPI(
        title="Mailkan",
        description="Three-column kanban board on top of an IMAP mailbox",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service or LiveEmailService(settings)

    # CORS: allow frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3100", "http://127.0.0.1:3100"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KanbanError)
    async def kanban_error_handler(request: Request, exc: KanbanError):
        status = status_for(exc)
        logger.error(f"{request.method} {request.url.path} failed ({status}): {exc}")
        body = {"success": False, "error": exc.user_message, "retryable": exc.retryable}
        if isinstance(exc, MoveFailedError):
            body["context"] = exc.context()
        return JSONResponse(status_code=status, content=body)

    # Register routers
    app.include_router(live.router)

    @app.get("/")
    async def root():
        """Root endpoint — basic info."""
        return {
            "app": "Mailkan",
            "version": "0.1.0",
            "status": "running",
            "imap_configured": app.state.service.settings.imap_configured,
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        current = app.state.service
        return {
            "status": "healthy",
            "cached_folders": len(current.cache),
            "board_size": len(current.store.records),
        }

    return app


app = create_app()
