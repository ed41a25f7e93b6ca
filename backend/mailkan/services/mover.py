"""Move/delete orchestrator — column changes carried out as IMAP folder moves.

A move walks REQUESTED → SOURCE_VERIFIED → MOVED → [DESTINATION_RESOLVED]
→ COMPLETED, or ends in FAILED. IMAP gives no guarantee that a message
keeps its UID when it changes folder, so after the move we try to learn the
new one: from COPYUID when the server reports it, otherwise by searching
the destination for the same subject and sender after a short settle
delay. Not finding it is fine; the next sync corrects the UID.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from mailkan.exceptions import ImapConnectionError, ImapProtocolError, MoveFailedError
from mailkan.models.events import MessageDeleted, MessageMoved
from mailkan.models.message import MessageMetadata
from mailkan.services.cache import MessageCache
from mailkan.services.columns import INBOX
from mailkan.services.events import EventBus
from mailkan.services.imap_session import ImapConnector, ImapSession
from mailkan.services.message_parser import parse_headers, parse_uid

logger = logging.getLogger(__name__)

NOT_FOUND = "not found"

# Newest messages searched when re-resolving a UID in the destination
RESOLVE_WINDOW = 50


class MoveState(str, Enum):
    REQUESTED = "requested"
    SOURCE_VERIFIED = "source_verified"
    MOVED = "moved"
    DESTINATION_RESOLVED = "destination_resolved"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class MoveOutcome:
    uid: int
    source: str
    destination: str
    state: MoveState = MoveState.REQUESTED
    new_uid: Optional[int] = None
    reason: Optional[str] = None
    history: list[MoveState] = field(default_factory=lambda: [MoveState.REQUESTED])

    @property
    def success(self) -> bool:
        return self.state == MoveState.COMPLETED

    def advance(self, state: MoveState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> "MoveOutcome":
        self.reason = reason
        self.advance(MoveState.FAILED)
        return self


@dataclass
class DeleteOutcome:
    uid: int
    folder: str
    success: bool
    reason: Optional[str] = None


class MoveOrchestrator:
    """Runs moves and deletes against the server and keeps the cache honest."""

    def __init__(
        self,
        connector: ImapConnector,
        cache: MessageCache,
        events: EventBus,
        settle_delay: float = 1.0,
        resolve_new_uid: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._connector = connector
        self._cache = cache
        self._events = events
        self.settle_delay = settle_delay
        self.resolve_new_uid = resolve_new_uid
        self._sleep = sleep

    async def move(
        self,
        uid: int,
        source: str,
        destination: str,
        metadata: Optional[MessageMetadata] = None,
    ) -> MoveOutcome:
        outcome = MoveOutcome(uid=uid, source=source, destination=destination)
        logger.info(f"Moving email UID {uid} from {source} to {destination}")

        try:
            async with self._connector.session(source, readonly=False) as session:
                if not await session.uid_exists(uid):
                    logger.warning(f"Email UID {uid} not found in {source}")
                    return outcome.fail(NOT_FOUND)
                outcome.advance(MoveState.SOURCE_VERIFIED)

                if destination.upper() != INBOX:
                    await self._ensure_destination(session, destination)

                outcome.new_uid = await session.move(uid, destination)
                outcome.advance(MoveState.MOVED)
        except (ImapConnectionError, ImapProtocolError) as e:
            outcome.fail(str(e))
            logger.error(f"Error moving email {uid}: {e}")
            raise MoveFailedError(
                f"Move of UID {uid} from {source} to {destination} failed: {e}",
                uid=uid,
                source=source,
                destination=destination,
                user_message=e.user_message,
            ) from e

        if outcome.new_uid is None and self.resolve_new_uid and metadata and metadata.subject:
            outcome.new_uid = await self._resolve_new_uid(destination, metadata)
        if outcome.new_uid is not None:
            outcome.advance(MoveState.DESTINATION_RESOLVED)

        self._cache.invalidate([source, destination])
        outcome.advance(MoveState.COMPLETED)
        logger.info(f"Email move successful: {uid} -> {destination} (new UID: {outcome.new_uid})")

        self._events.publish(MessageMoved(
            uid=uid,
            new_uid=outcome.new_uid,
            from_folder=source,
            to_folder=destination,
            metadata=metadata,
        ))
        return outcome

    @staticmethod
    async def _ensure_destination(session: ImapSession, destination: str) -> None:
        existing = {name.lower() for name in await session.list_folders()}
        if destination.lower() not in existing:
            logger.info(f"Destination folder {destination} missing, creating it")
            await session.create_folder(destination)

    async def _resolve_new_uid(self, folder: str, metadata: MessageMetadata) -> Optional[int]:
        """
        Find the moved message in ``folder`` by subject and sender.

        More than one match is treated as unresolved rather than guessed.
        """
        await self._sleep(self.settle_delay)

        subject = (metadata.subject or "").strip().lower()
        sender = (metadata.sender or "").strip().lower()
        try:
            async with self._connector.session(folder, readonly=True) as session:
                uids = await session.search_uids("ALL")
                headers = await session.fetch_headers(uids[-RESOLVE_WINDOW:])
        except (ImapConnectionError, ImapProtocolError) as e:
            logger.warning(f"Could not look up new UID in {folder}: {e}")
            return None

        candidates = []
        for raw in headers:
            fields = parse_headers(raw.literal)
            if fields.get("subject", "").strip().lower() != subject:
                continue
            if sender and sender not in fields.get("from", "").lower():
                continue
            found = parse_uid(raw.attributes)
            if found is not None:
                candidates.append(found)

        if len(candidates) == 1:
            logger.info(f"Found new UID {candidates[0]} in {folder} (subject: {metadata.subject})")
            return candidates[0]
        if candidates:
            logger.warning(
                f"Ambiguous UID lookup in {folder}: {len(candidates)} messages match "
                f"'{metadata.subject}', keeping old UID"
            )
        else:
            logger.info(f"Could not find new UID in {folder}, keeping old UID")
        return None

    async def delete(self, uid: int, folder: str, metadata: Optional[MessageMetadata] = None) -> DeleteOutcome:
        logger.info(f"Deleting email UID {uid} from {folder}")
        try:
            async with self._connector.session(folder, readonly=False) as session:
                if not await session.uid_exists(uid):
                    logger.warning(f"Email UID {uid} not found in {folder}")
                    return DeleteOutcome(uid=uid, folder=folder, success=False, reason=NOT_FOUND)
                await session.delete(uid)
        except (ImapConnectionError, ImapProtocolError) as e:
            logger.error(f"Error deleting email {uid}: {e}")
            raise MoveFailedError(
                f"Delete of UID {uid} from {folder} failed: {e}",
                uid=uid,
                source=folder,
                user_message="Löschen auf dem Mailserver fehlgeschlagen",
            ) from e

        self._cache.invalidate([folder])
        logger.info(f"Email deletion successful: {uid} from {folder}")
        self._events.publish(MessageDeleted(uid=uid, folder=folder, metadata=metadata))
        return DeleteOutcome(uid=uid, folder=folder, success=True)

