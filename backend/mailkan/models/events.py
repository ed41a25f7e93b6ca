"""Domain events published after the board changes on the server."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from mailkan.models.message import MessageMetadata, utcnow


@dataclass(frozen=True)
class MessageMoved:
    uid: int
    new_uid: Optional[int]
    from_folder: str
    to_folder: str
    metadata: Optional[MessageMetadata] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MessageDeleted:
    uid: int
    folder: str
    metadata: Optional[MessageMetadata] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MessagesUpdated:
    count: int
    partial: bool = False
    timestamp: datetime = field(default_factory=utcnow)
