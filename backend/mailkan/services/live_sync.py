"""Live email service — the board's view of the IMAP mailbox.

Reads go cache → IMAP → reconciliation store; writes go through the move
orchestrator. Every folder is fetched on its own connection and a failing
folder never takes the others down with it: it falls back to a recent
cache entry when one exists and is reported as partial otherwise.
"""

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Union

from mailkan.config import Settings
from mailkan.exceptions import (
    ImapConnectionError,
    ImapProtocolError,
    KanbanError,
    MoveFailedError,
    ParseFailure,
    ValidationError,
)
from mailkan.models.events import MessagesUpdated
from mailkan.models.message import Message, MessageMetadata, utcnow
from mailkan.services.cache import MessageCache
from mailkan.services.columns import COLUMNS, folder_for, managed_folders
from mailkan.services.events import EventBus
from mailkan.services.imap_session import ImapConnector
from mailkan.services.message_parser import parse_fetch
from mailkan.services.mover import DeleteOutcome, MoveOrchestrator, MoveOutcome
from mailkan.services.store import ReconciliationStore

logger = logging.getLogger(__name__)


@dataclass
class FolderResult:
    column: str
    folder: str
    messages: list[Message]
    # "live", "cache", "stale-cache" or "unavailable"
    source: str
    error: Optional[str] = None

    @property
    def stale(self) -> bool:
        return self.source == "stale-cache"

    def summary(self) -> dict:
        return {
            "column": self.column,
            "folder": self.folder,
            "count": len(self.messages),
            "source": self.source,
            "stale": self.stale,
            "error": self.error,
        }


@dataclass
class LiveFetchResult:
    messages: list[Message]
    fetched_at: datetime
    duration_ms: int
    folders: list[FolderResult] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return any(f.error for f in self.folders)


@dataclass
class ConnectionProbe:
    connected: bool
    duration_ms: int
    error: Optional[str] = None


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class LiveEmailService:
    """Live IMAP board operations on top of cache, store and move orchestrator."""

    def __init__(
        self,
        settings: Settings,
        connector: Optional[ImapConnector] = None,
        cache: Optional[MessageCache] = None,
        store: Optional[ReconciliationStore] = None,
        events: Optional[EventBus] = None,
        mover: Optional[MoveOrchestrator] = None,
    ):
        self.settings = settings
        self.connector = connector or ImapConnector(settings)
        self.cache = cache or MessageCache(ttl_seconds=settings.cache_ttl_seconds)
        self.store = store or ReconciliationStore(settings.data_file)
        self.events = events or EventBus()
        self.mover = mover or MoveOrchestrator(
            self.connector,
            self.cache,
            self.events,
            settle_delay=settings.settle_delay_seconds,
            resolve_new_uid=settings.resolve_new_uid,
        )
        self._inflight: dict[tuple[str, bool], asyncio.Future] = {}

    async def start(self) -> None:
        await self.store.load()

    async def close(self) -> None:
        await self.store.flush()

    # === LIVE EMAIL FETCHING ===

    async def _fetch_live(self, folder: str, column: str) -> list[Message]:
        logger.info(f"Fetching live emails from {folder}...")
        async with self.connector.session(folder, readonly=True) as session:
            if session.exists == 0:
                logger.info(f"{folder} is empty")
                raw = []
            else:
                uids = await session.search_uids("ALL")
                raw = await session.fetch_messages(uids[-self.settings.max_messages_per_folder:])

        messages = []
        for item in raw:
            try:
                messages.append(parse_fetch(item, column, folder))
            except ParseFailure as e:
                logger.warning(f"Parse error for email in {folder}: {e}")

        messages.sort(key=lambda m: m.date, reverse=True)
        self.cache.put(folder, column, messages)
        logger.info(f"Successfully fetched {len(messages)} emails from {folder}")
        return messages

    def _forget(self, key: tuple[str, bool], future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]

    async def _fetch_shared(self, folder: str, column: str, force_refresh: bool) -> list[Message]:
        """Concurrent callers asking for the same (folder, force_refresh) share one fetch."""
        key = (folder, force_refresh)
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._fetch_live(folder, column))
            self._inflight[key] = future
            future.add_done_callback(functools.partial(self._forget, key))
        else:
            logger.debug(f"Joining in-flight fetch for {folder}")
        return await asyncio.shield(future)

    async def _load_folder(self, column: str, force_refresh: bool) -> FolderResult:
        folder = folder_for(column)

        cached = self.cache.get(folder, column, force_refresh)
        if cached is not None:
            logger.info(f"Using cached emails for {folder} ({len(cached)} emails)")
            return FolderResult(column, folder, cached, source="cache")

        try:
            messages = await self._fetch_shared(folder, column, force_refresh)
        except (ImapConnectionError, ImapProtocolError) as e:
            logger.error(f"Error fetching from {folder}: {e}")
            stale = self.cache.get_stale(folder, column)
            if stale is not None:
                logger.info(f"Using stale cached emails for {folder}: {len(stale)} emails")
                return FolderResult(column, folder, stale, source="stale-cache", error=e.user_message)
            return FolderResult(column, folder, [], source="unavailable", error=e.user_message)

        return FolderResult(column, folder, messages, source="live")

    async def fetch_all_live(self, force_refresh: bool = False) -> LiveFetchResult:
        """Fetch every column, merge into the store and return the whole board."""
        start = time.monotonic()
        logger.info(f"Starting live email fetch (force: {force_refresh})")

        folders = []
        fresh: list[Message] = []
        for column in COLUMNS:
            result = await self._load_folder(column, force_refresh)
            folders.append(result)
            fresh.extend(result.messages)

        merged = await self.store.sync(fresh)
        outcome = LiveFetchResult(
            messages=merged,
            fetched_at=utcnow(),
            duration_ms=_elapsed_ms(start),
            folders=folders,
        )
        logger.info(
            f"Live email fetch completed in {outcome.duration_ms}ms - "
            f"Total: {len(merged)} emails ({len(fresh)} from server)"
        )
        self.events.publish(MessagesUpdated(count=len(merged), partial=outcome.partial))
        return outcome

    async def fetch_folder_live(self, column: str, force_refresh: bool = False) -> FolderResult:
        """Fetch one column; the returned messages carry their stored identity."""
        folder_for(column)
        result = await self._load_folder(column, force_refresh)
        if result.messages:
            merged = await self.store.sync(result.messages)
            # merge() lists the records for the fresh messages first, in order
            result.messages = merged[: len(result.messages)]
        return result

    # === LIVE EMAIL ACTIONS ===

    async def move_live(
        self,
        uid: int,
        from_column: str,
        to_column: str,
        metadata: Optional[MessageMetadata] = None,
    ) -> MoveOutcome:
        source = folder_for(from_column)
        destination = folder_for(to_column)
        if source == destination:
            raise ValidationError(
                f"Email UID {uid} is already in {to_column}",
                user_message="Nachricht ist bereits in dieser Spalte",
            )

        outcome = await self.mover.move(uid, source, destination, metadata)
        if outcome.success:
            await self._apply_move(outcome, to_column)
        return outcome

    async def _apply_move(self, outcome: MoveOutcome, to_column: str) -> None:
        changed = False
        for record in self.store.records:
            if record.folder == outcome.source and record.uid == outcome.uid:
                record.column = to_column
                record.folder = outcome.destination
                if outcome.new_uid is not None:
                    record.uid = outcome.new_uid
                record.last_modified = utcnow()
                changed = True
        if changed:
            await self.store.flush()

    async def delete_live(
        self, uid: int, column: str, metadata: Optional[MessageMetadata] = None
    ) -> DeleteOutcome:
        return await self.mover.delete(uid, folder_for(column), metadata)

    # === BOARD OPERATIONS ===

    def board(self) -> dict[str, list[Message]]:
        return {column: self.store.by_column(column) for column in COLUMNS}

    def stats(self) -> dict[str, int]:
        return self.store.stats()

    async def move_message(self, message_id: str, to_column: str) -> Message:
        """Move a board card to another column, on the server first."""
        record = self.store.require(message_id)
        folder_for(to_column)
        if record.column == to_column:
            return record

        metadata = MessageMetadata(subject=record.subject, sender=record.sender)
        outcome = await self.move_live(record.uid, record.column, to_column, metadata)
        if not outcome.success:
            raise MoveFailedError(
                f"Email {message_id} (UID {record.uid}) {outcome.reason} in {outcome.source}",
                uid=record.uid,
                source=outcome.source,
                destination=outcome.destination,
                user_message="Nachricht auf dem Server nicht gefunden, bitte neu synchronisieren",
            )
        return self.store.require(message_id)

    async def archive_message(self, message_id: str) -> DeleteOutcome:
        """Delete on the server and drop the card from the board."""
        record = self.store.require(message_id)
        metadata = MessageMetadata(subject=record.subject, sender=record.sender)
        outcome = await self.delete_live(record.uid, record.column, metadata)
        if not outcome.success:
            logger.warning(f"UID {record.uid} was already gone from {record.folder}, removing locally")
        await self.store.remove(message_id)
        return outcome

    # === CACHE MANAGEMENT ===

    def cache_status(self) -> dict:
        status = self.cache.status()
        status["imap"] = {
            "host": self.settings.imap_host,
            "port": self.settings.imap_port,
            "user": self.settings.imap_user,
            "tls": self.settings.imap_use_ssl,
        }
        return status

    def cache_clear(self) -> int:
        return self.cache.clear()

    def cache_invalidate(self, folders: Union[str, Iterable[str]]) -> int:
        if isinstance(folders, str):
            folders = [folders]
        folders = [f for f in folders if f]
        if not folders:
            raise ValidationError("Missing folders parameter", user_message="Keine Ordner angegeben")
        return self.cache.invalidate(folders)

    # === UTILITY ===

    async def test_connection(self) -> ConnectionProbe:
        start = time.monotonic()
        try:
            await self.connector.probe()
        except KanbanError as e:
            logger.error(f"IMAP connection test failed: {e}")
            return ConnectionProbe(connected=False, duration_ms=_elapsed_ms(start), error=e.user_message)
        logger.info("IMAP connection test successful")
        return ConnectionProbe(connected=True, duration_ms=_elapsed_ms(start))

    async def ensure_folders(self) -> list[str]:
        """Create the kanban folders that are missing; returns the ones created."""
        created = await self.connector.ensure_folders(managed_folders())
        logger.info(f"Ensured kanban folders exist (created: {created or 'none'})")
        return created
