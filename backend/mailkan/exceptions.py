"""Error taxonomy for the live IMAP layer.

Every error carries a short localized ``user_message`` for the board UI;
the English ``str()`` form is what ends up in the logs.
"""

from typing import Optional


class KanbanError(Exception):
    """Base class for all Mailkan errors."""

    user_message = "Unbekannter Fehler"
    retryable = False

    def __init__(self, message: str = "", *, user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ImapConnectionError(KanbanError):
    """Network, DNS or TLS failure, or no greeting within the connect timeout."""

    user_message = "Verbindung zum Mailserver fehlgeschlagen"
    retryable = True


class ImapAuthError(KanbanError):
    """The server rejected the configured credentials."""

    user_message = "Anmeldung am Mailserver fehlgeschlagen"


class ImapProtocolError(KanbanError):
    """Unexpected response or timeout on a single IMAP command."""

    user_message = "Unerwartete Antwort vom Mailserver"
    retryable = True

    def __init__(self, message: str = "", *, command: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.command = command


class ParseFailure(KanbanError):
    """A single FETCH response could not be turned into a message."""

    user_message = "Nachricht konnte nicht gelesen werden"


class MessageNotFoundError(KanbanError):
    """No message with the given local id exists on the board."""

    user_message = "Nachricht nicht gefunden"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class ValidationError(KanbanError):
    """Bad input from the caller, rejected before any IMAP call."""

    user_message = "Ungültige Eingabe"


class MoveFailedError(KanbanError):
    """A move or delete could not be carried out on the server."""

    user_message = "Verschieben auf dem Mailserver fehlgeschlagen"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        uid: int,
        source: str,
        destination: Optional[str] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.uid = uid
        self.source = source
        self.destination = destination

    def context(self) -> dict:
        return {"uid": self.uid, "source": self.source, "destination": self.destination}
