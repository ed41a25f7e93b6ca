from mailkan.models.message import Message, MessageMetadata
from mailkan.models.events import MessageDeleted, MessageMoved, MessagesUpdated

__all__ = [
    "Message",
    "MessageMetadata",
    "MessageMoved",
    "MessageDeleted",
    "MessagesUpdated",
]
