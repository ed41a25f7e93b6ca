"""Notification channel for board changes.

Listeners are plain callables invoked synchronously, in subscription
order, when an event is published. ``queue()`` wraps a subscription in an
asyncio.Queue for consumers that prefer to await events.
"""

import asyncio
import logging
from typing import Callable, Union

from mailkan.models.events import MessageDeleted, MessageMoved, MessagesUpdated

logger = logging.getLogger(__name__)

Event = Union[MessageMoved, MessageDeleted, MessagesUpdated]
Listener = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def queue(self, maxsize: int = 0) -> tuple[asyncio.Queue, Callable[[], None]]:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        return q, self.subscribe(q.put_nowait)

    def publish(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # Listener failures stay isolated from the publisher and other listeners
                logger.exception(f"Listener {listener!r} failed on {type(event).__name__}")

    def __len__(self) -> int:
        return len(self._listeners)
