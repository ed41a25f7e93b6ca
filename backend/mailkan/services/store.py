"""Reconciliation store — the persisted board snapshot.

Live fetches only ever see what is on the server right now. The store
merges them into the last known snapshot so that locally generated ids and
local-only fields survive, and so that messages the live fetch missed (a
folder that failed to load, say) are kept rather than dropped.

Records are correlated by their match key: subject + sender + date in epoch
milliseconds. Colliding keys are paired with stored records in order, so two
distinct messages sharing all three may swap identities; that is a known
limitation.
"""

import asyncio
import json
import logging
from collections import defaultdict, deque
from pathlib import Path
from typing import Iterable, Optional
from uuid import uuid4

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter

from mailkan.exceptions import MessageNotFoundError
from mailkan.models.message import Message, utcnow
from mailkan.services.columns import COLUMNS

logger = logging.getLogger(__name__)

_snapshot = TypeAdapter(list[Message])


class ReconciliationStore:
    """Persisted list of board messages, merged with every live fetch."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._records: list[Message] = []
        self._lock = asyncio.Lock()

    @property
    def records(self) -> list[Message]:
        return list(self._records)

    async def load(self) -> list[Message]:
        """Read the snapshot from disk; a missing file is an empty board."""
        if not await aiofiles.os.path.exists(self.path):
            logger.info(f"No snapshot at {self.path}, starting with an empty board")
            self._records = []
            return self.records

        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            data = await f.read()
        self._records = _snapshot.validate_json(data or "[]")
        logger.info(f"Loaded {len(self._records)} emails from {self.path}")
        return self.records

    def merge(self, fresh: Iterable[Message]) -> list[Message]:
        """
        Merge freshly fetched messages into the current snapshot.

        The result lists one record per fresh message, in fetch order,
        followed by every existing record no fresh message claimed.
        Matched records are updated in place: column, folder, uid and
        last_modified change, everything else (id included) is kept.
        """
        existing: dict[tuple, deque[Message]] = defaultdict(deque)
        for record in self._records:
            existing[record.match_key].append(record)

        now = utcnow()
        merged: list[Message] = []
        claimed: set[int] = set()
        inserted = updated = 0

        for message in fresh:
            candidates = existing.get(message.match_key)
            if candidates:
                # Colliding keys are claimed in stored order, one record per fresh message
                record = candidates.popleft()
                record.column = message.column
                record.folder = message.folder
                record.uid = message.uid
                record.last_modified = now
                merged.append(record)
                claimed.add(id(record))
                updated += 1
            else:
                merged.append(message.model_copy(update={"last_modified": now}))
                inserted += 1

        merged.extend(r for r in self._records if id(r) not in claimed)

        logger.info(
            f"Merged {inserted + updated} emails from server "
            f"({inserted} new, {updated} updated, {len(merged) - inserted - updated} kept locally)"
        )
        return merged

    async def persist(self, records: list[Message]) -> None:
        """Write ``records`` atomically: temp file in the same directory, then rename."""
        await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        payload = json.dumps([r.to_snapshot() for r in records], indent=2, ensure_ascii=False)

        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(payload)
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError:
            if await aiofiles.os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

        self._records = list(records)
        logger.debug(f"Saved {len(records)} emails to {self.path}")

    async def sync(self, fresh: Iterable[Message]) -> list[Message]:
        """Merge and persist as one step; concurrent callers are serialized."""
        async with self._lock:
            merged = self.merge(fresh)
            await self.persist(merged)
            return merged

    async def flush(self) -> None:
        async with self._lock:
            await self.persist(self._records)

    def get(self, message_id: str) -> Optional[Message]:
        for record in self._records:
            if record.id == message_id:
                return record
        return None

    def require(self, message_id: str) -> Message:
        record = self.get(message_id)
        if record is None:
            raise MessageNotFoundError(message_id)
        return record

    def by_column(self, column: str) -> list[Message]:
        return [r for r in self._records if r.column == column]

    async def remove(self, message_id: str) -> Message:
        async with self._lock:
            record = self.require(message_id)
            await self.persist([r for r in self._records if r.id != message_id])
            return record

    def stats(self) -> dict[str, int]:
        counts = {"total": len(self._records)}
        for column in COLUMNS:
            counts[column] = sum(1 for r in self._records if r.column == column)
        return counts
