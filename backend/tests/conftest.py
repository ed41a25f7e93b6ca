"""
Shared test fixtures and configuration for pytest
"""
from contextlib import asynccontextmanager
from email.message import EmailMessage
from typing import Optional

import pytest

from mailkan.config import Settings
from mailkan.exceptions import ImapConnectionError, ImapProtocolError
from mailkan.models.message import Message
from mailkan.services.cache import MessageCache
from mailkan.services.events import EventBus
from mailkan.services.live_sync import LiveEmailService
from mailkan.services.message_parser import RawFetch, split_header_body
from mailkan.services.store import ReconciliationStore

ARRIVED = "06-Oct-2025 07:20:00 +0000"


def make_raw(
    subject: Optional[str] = "Hello",
    sender: Optional[str] = "Alice <alice@example.com>",
    date: Optional[str] = "Mon, 06 Oct 2025 09:15:00 +0200",
    body: str = "Hi there",
    html: Optional[str] = None,
) -> bytes:
    """Build an RFC 822 message the way a server would hand it back."""
    msg = EmailMessage()
    if subject is not None:
        msg["Subject"] = subject
    if sender is not None:
        msg["From"] = sender
    msg["To"] = "board@example.com"
    if date is not None:
        msg["Date"] = date
    if html is not None and not body:
        msg.set_content(html, subtype="html")
    else:
        msg.set_content(body)
        if html is not None:
            msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def make_message(uid: int = 1, column: str = "posteingang", folder: str = "INBOX", **fields) -> Message:
    return Message(uid=uid, column=column, folder=folder, **fields)


class FakeSession:
    """In-memory stand-in for ImapSession bound to one folder."""

    def __init__(self, connector: "FakeConnector", folder: Optional[str], readonly: bool):
        self._connector = connector
        self.folder = folder
        self.readonly = readonly
        mailbox = connector.folders.get(folder, {}) if folder else {}
        self.exists = len(mailbox) if folder else None

    @property
    def _mailbox(self) -> dict[int, bytes]:
        return self._connector.folders[self.folder]

    async def search_uids(self, *criteria: str) -> list[int]:
        if self._connector.gate is not None:
            await self._connector.gate.wait()
        if criteria and criteria[0] == "UID":
            uid = int(criteria[1])
            return [uid] if uid in self._mailbox else []
        return sorted(self._mailbox)

    async def uid_exists(self, uid: int) -> bool:
        return uid in await self.search_uids("UID", str(uid))

    async def fetch_messages(self, uids: list[int]) -> list[RawFetch]:
        return [
            RawFetch(
                f'{seq} FETCH (UID {uid} INTERNALDATE "{ARRIVED}" BODY[] {{{len(self._mailbox[uid])}}}',
                self._mailbox[uid],
            )
            for seq, uid in enumerate(uids, start=1)
            if uid in self._mailbox
        ]

    async def fetch_headers(self, uids: list[int]) -> list[RawFetch]:
        self._connector.header_fetches.append((self.folder, list(uids)))
        return [
            RawFetch(f"{seq} FETCH (UID {uid} BODY[HEADER.FIELDS (FROM SUBJECT DATE)] {{0}}",
                     split_header_body(self._mailbox[uid])[0])
            for seq, uid in enumerate(uids, start=1)
            if uid in self._mailbox
        ]

    async def move(self, uid: int, destination: str) -> Optional[int]:
        if self._connector.move_error is not None:
            raise self._connector.move_error
        if destination not in self._connector.folders:
            raise ImapProtocolError(f"MOVE returned NO: [TRYCREATE] {destination}", command="MOVE")
        raw = self._mailbox.pop(uid)
        new_uid = self._connector.add(destination, raw)
        self._connector.moves.append((uid, self.folder, destination))
        return new_uid if self._connector.copyuid else None

    async def delete(self, uid: int) -> None:
        del self._mailbox[uid]
        self._connector.deletes.append((uid, self.folder))

    async def list_folders(self) -> list[str]:
        return list(self._connector.folders)

    async def create_folder(self, name: str) -> None:
        self._connector.created.append(name)
        self._connector.folders[name] = {}


class FakeConnector:
    """In-memory IMAP server; records what was opened and changed."""

    def __init__(self, copyuid: bool = True):
        self.folders: dict[str, dict[int, bytes]] = {"INBOX": {}, "In_Bearbeitung": {}, "Warte_auf_Antwort": {}}
        self._next_uid: dict[str, int] = {}
        self.copyuid = copyuid
        self.fail: dict[str, Exception] = {}
        self.move_error: Optional[Exception] = None
        self.gate = None
        self.opened: list[tuple[Optional[str], bool]] = []
        self.moves: list[tuple[int, str, str]] = []
        self.deletes: list[tuple[int, str]] = []
        self.header_fetches: list[tuple[str, list[int]]] = []
        self.created: list[str] = []

    def add(self, folder: str, raw: bytes) -> int:
        uid = self._next_uid.get(folder, 100 if folder == "INBOX" else 500)
        self._next_uid[folder] = uid + 1
        self.folders.setdefault(folder, {})[uid] = raw
        return uid

    @asynccontextmanager
    async def session(self, folder: Optional[str] = None, readonly: bool = True):
        if folder in self.fail:
            raise self.fail[folder]
        if folder is not None and folder not in self.folders:
            raise ImapProtocolError(f"SELECT {folder} returned NO", command="SELECT")
        self.opened.append((folder, readonly))
        yield FakeSession(self, folder, readonly)

    def opened_for(self, folder: str) -> int:
        return sum(1 for name, _ in self.opened if name == folder)

    async def probe(self) -> bool:
        if None in self.fail:
            raise self.fail[None]
        return True

    async def ensure_folders(self, names: list[str]) -> list[str]:
        created = []
        for name in names:
            if name not in self.folders:
                self.folders[name] = {}
                created.append(name)
        return created


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / "data" / "emails.json"


@pytest.fixture
def test_settings(data_file):
    return Settings(
        _env_file=None,
        imap_host="imap.test.com",
        imap_user="",
        imap_password="",
        data_file=data_file,
        settle_delay_seconds=0,
        cache_ttl_seconds=60,
        api_token="",
    )


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MessageCache(ttl_seconds=60, clock=clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def published(events):
    received = []
    events.subscribe(received.append)
    return received


@pytest.fixture
def store(data_file):
    return ReconciliationStore(data_file)


@pytest.fixture
def service(test_settings, connector, cache, store, events):
    return LiveEmailService(test_settings, connector=connector, cache=cache, store=store, events=events)


@pytest.fixture
def connection_error():
    return ImapConnectionError("Connection to imap.test.com:993 failed: ConnectionRefusedError()")
