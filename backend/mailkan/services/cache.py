"""Per-folder TTL cache of parsed message lists.

Entries are keyed by ``"{folder}_{column}"``. A fresh entry (younger than
the TTL) is served without touching the network; an expired entry is kept
around so a failed live fetch can fall back to it for up to twice the TTL.

    >>> cache = MessageCache(ttl_seconds=60)
    >>> cache.put("INBOX", "posteingang", messages)
    >>> cache.get("INBOX", "posteingang")          # fresh hit or None
    >>> cache.get_stale("INBOX", "posteingang")    # fallback after a failed fetch
    >>> cache.invalidate(["INBOX", "In_Bearbeitung"])
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from mailkan.models.message import Message

logger = logging.getLogger(__name__)

STALE_FACTOR = 2


@dataclass
class CacheEntry:
    messages: list[Message]
    captured_at: float


class MessageCache:
    """TTL cache for live folder fetches."""

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @staticmethod
    def key(folder: str, column: str) -> str:
        return f"{folder}_{column}"

    def _age(self, entry: CacheEntry) -> float:
        return self._clock() - entry.captured_at

    def get(self, folder: str, column: str, force_refresh: bool = False) -> Optional[list[Message]]:
        """Cached list if younger than the TTL; None on miss, expiry or force_refresh."""
        if force_refresh:
            return None
        entry = self._entries.get(self.key(folder, column))
        if entry is None:
            return None
        age = self._age(entry)
        if age >= self.ttl_seconds:
            return None
        logger.debug(f"Cache hit for {folder} (age: {age:.1f}s, {len(entry.messages)} messages)")
        return entry.messages

    def get_stale(self, folder: str, column: str) -> Optional[list[Message]]:
        """Emergency fallback: the entry if it is younger than twice the TTL."""
        entry = self._entries.get(self.key(folder, column))
        if entry is None or self._age(entry) >= self.ttl_seconds * STALE_FACTOR:
            return None
        return entry.messages

    def put(self, folder: str, column: str, messages: list[Message]) -> None:
        self._entries[self.key(folder, column)] = CacheEntry(list(messages), self._clock())
        logger.info(f"Cache updated for {self.key(folder, column)}: {len(messages)} emails")

    def invalidate(self, folders: Union[str, Iterable[str]]) -> int:
        """Drop every entry whose key mentions one of ``folders``."""
        if isinstance(folders, str):
            folders = [folders]
        removed = 0
        for folder in folders:
            keys = [key for key in self._entries if folder in key]
            for key in keys:
                del self._entries[key]
            removed += len(keys)
            logger.info(f"Cache invalidated for {folder} ({len(keys)} entries)")
        return removed

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info(f"All cache cleared ({count} entries)")
        return count

    def status(self) -> dict:
        entries = []
        for key, entry in self._entries.items():
            age = self._age(entry)
            entries.append({
                "key": key,
                "message_count": len(entry.messages),
                "age_seconds": round(age, 3),
                "expired": age >= self.ttl_seconds,
            })
        return {
            "total_entries": len(self._entries),
            "ttl_seconds": self.ttl_seconds,
            "entries": entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
