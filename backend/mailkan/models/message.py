"""A single email card on the board."""

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    # Unknown keys in the snapshot are local-only fields set by clients; keep them.
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid4()))
    uid: int
    seqno: Optional[int] = None

    subject: str = "No Subject"
    sender: str = "Unknown Sender"
    recipients: str = ""
    date: datetime = Field(default_factory=utcnow)

    text: str = ""
    html: str = ""
    preview: str = ""

    column: str
    folder: str

    fetched_at: datetime = Field(default_factory=utcnow)
    last_modified: Optional[datetime] = None

    @property
    def match_key(self) -> tuple[str, str, int]:
        """Correlates a fetched message with a persisted record."""
        return (self.subject, self.sender, int(self.date.timestamp() * 1000))

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-ready dict for the persisted board; sequence numbers are session-only."""
        return self.model_dump(mode="json", exclude={"seqno"})

    def __repr__(self):
        return f"<Message {self.id} uid={self.uid} {self.folder}: {self.subject[:50]}>"


class MessageMetadata(BaseModel):
    """What the caller knows about a message it asks us to move or delete."""

    subject: Optional[str] = None
    sender: Optional[str] = Field(default=None, alias="from")

    model_config = ConfigDict(populate_by_name=True)
