"""One short-lived, scoped IMAP connection per operation."""

import asyncio
import logging
import re
import ssl
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Optional

import aioimaplib

from mailkan.config import Settings
from mailkan.exceptions import ImapAuthError, ImapConnectionError, ImapProtocolError
from mailkan.services.message_parser import RawFetch, split_fetch_response

logger = logging.getLogger(__name__)

FETCH_MESSAGE = "(UID INTERNALDATE BODY.PEEK[])"
FETCH_HEADERS = "(UID BODY.PEEK[HEADER.FIELDS (FROM SUBJECT DATE)])"

_COPYUID_RE = re.compile(r"COPYUID \d+ \S+ (\d+)", re.IGNORECASE)
_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?:"[^"]*"|NIL)\s+(?P<name>.+)$', re.IGNORECASE)

_COMMAND_ERRORS = (aioimaplib.Abort, aioimaplib.CommandTimeout, asyncio.TimeoutError)


def _line_text(line) -> str:
    return line.decode("utf-8", errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)


def _lines_summary(lines) -> str:
    return " | ".join(_line_text(line) for line in lines if not isinstance(line, bytearray))[:300]


def parse_uid_list(lines) -> list[int]:
    """UIDs from a SEARCH response; the first line carries the numbers."""
    if not lines:
        return []
    return [int(u) for u in _line_text(lines[0]).split() if u.isdigit()]


class ImapSession:
    """Handle for one authenticated connection, optionally with a selected folder."""

    def __init__(self, client: aioimaplib.IMAP4, folder: Optional[str], readonly: bool, exists: Optional[int] = None):
        self._client = client
        self.folder = folder
        self.readonly = readonly
        self.exists = exists

    async def _command(self, name: str, call: Awaitable):
        try:
            response = await call
        except _COMMAND_ERRORS as e:
            raise ImapProtocolError(f"{name} failed on {self.folder}: {e!r}", command=name) from e
        if response.result != "OK":
            raise ImapProtocolError(
                f"{name} on {self.folder} returned {response.result}: {_lines_summary(response.lines)}",
                command=name,
            )
        return response

    async def search_uids(self, *criteria: str) -> list[int]:
        response = await self._command("SEARCH", self._client.uid_search(*criteria, charset=None))
        return parse_uid_list(response.lines)

    async def uid_exists(self, uid: int) -> bool:
        return uid in await self.search_uids("UID", str(uid))

    async def _fetch(self, uids: list[int], items: str) -> list[RawFetch]:
        if not uids:
            return []
        uid_set = ",".join(str(u) for u in uids)
        response = await self._command("FETCH", self._client.uid("fetch", uid_set, items))
        return split_fetch_response(response.lines)

    async def fetch_messages(self, uids: list[int]) -> list[RawFetch]:
        """Full messages, without setting \\Seen."""
        return await self._fetch(uids, FETCH_MESSAGE)

    async def fetch_headers(self, uids: list[int]) -> list[RawFetch]:
        return await self._fetch(uids, FETCH_HEADERS)

    async def move(self, uid: int, destination: str) -> Optional[int]:
        """
        Move ``uid`` to ``destination``.

        Uses MOVE when the server advertises it, else COPY + \\Deleted +
        EXPUNGE. Returns the destination UID when the server reports one
        via COPYUID (UIDPLUS), otherwise None.
        """
        if self._client.has_capability("MOVE"):
            response = await self._command("MOVE", self._client.uid("move", str(uid), destination))
        else:
            logger.info(f"Server lacks MOVE, using COPY/STORE/EXPUNGE for UID {uid}")
            response = await self._command("COPY", self._client.uid("copy", str(uid), destination))
            await self._command("STORE", self._client.uid("store", str(uid), "+FLAGS", r"(\Deleted)"))
            await self._command("EXPUNGE", self._client.expunge())

        for line in response.lines:
            match = _COPYUID_RE.search(_line_text(line))
            if match:
                return int(match.group(1))
        return None

    async def delete(self, uid: int) -> None:
        await self._command("STORE", self._client.uid("store", str(uid), "+FLAGS", r"(\Deleted)"))
        await self._command("EXPUNGE", self._client.expunge())

    async def list_folders(self) -> list[str]:
        """List available IMAP folders."""
        response = await self._command("LIST", self._client.list('""', "*"))
        folders = []
        for line in response.lines:
            match = _LIST_RE.search(_line_text(line).strip())
            if match:
                name = match.group("name").strip().strip('"')
                if name:
                    folders.append(name)
        return folders

    async def create_folder(self, name: str) -> None:
        await self._command("CREATE", self._client.create(name))


class ImapConnector:
    """Opens ImapSessions from settings; holds no connection between calls."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def _new_client(self) -> aioimaplib.IMAP4:
        s = self._settings
        if s.imap_use_ssl:
            ssl_context = ssl.create_default_context()
            if not s.imap_verify_ssl:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE
            return aioimaplib.IMAP4_SSL(
                host=s.imap_host,
                port=s.imap_port,
                ssl_context=ssl_context,
                timeout=s.response_timeout,
            )
        return aioimaplib.IMAP4(host=s.imap_host, port=s.imap_port, timeout=s.response_timeout)

    async def _open(self) -> aioimaplib.IMAP4:
        s = self._settings
        client = self._new_client()
        try:
            await asyncio.wait_for(client.wait_hello_from_server(), s.connect_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            self._drop(client)
            raise ImapConnectionError(f"Connection to {s.imap_host}:{s.imap_port} failed: {e!r}") from e

        try:
            response = await asyncio.wait_for(
                client.login(s.imap_user, s.imap_password), s.connect_timeout
            )
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort) as e:
            await self._close(client)
            raise ImapConnectionError(f"Login to {s.imap_host} timed out or dropped: {e!r}") from e

        if response.result != "OK":
            await self._close(client)
            raise ImapAuthError(f"Login failed for {s.imap_user}: {_lines_summary(response.lines)}")
        return client

    async def _close(self, client: aioimaplib.IMAP4) -> None:
        try:
            await asyncio.wait_for(client.logout(), self._settings.connect_timeout)
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
            logger.debug(f"Logout did not complete cleanly: {e!r}")
            self._drop(client)

    @staticmethod
    def _drop(client: aioimaplib.IMAP4) -> None:
        transport = getattr(getattr(client, "protocol", None), "transport", None)
        if transport is not None:
            transport.close()

    @asynccontextmanager
    async def session(self, folder: Optional[str] = None, readonly: bool = True) -> AsyncIterator[ImapSession]:
        """
        Connect, authenticate, select ``folder`` and yield a session.

        ``readonly`` selects with EXAMINE. With ``folder=None`` the session
        is authenticated but has no mailbox selected. The connection is
        closed on every exit path.
        """
        client = await self._open()
        try:
            exists = None
            if folder is not None:
                mode = "EXAMINE" if readonly else "SELECT"
                call = client.examine(folder) if readonly else client.select(folder)
                try:
                    response = await call
                except _COMMAND_ERRORS as e:
                    raise ImapProtocolError(f"{mode} {folder} failed: {e!r}", command=mode) from e
                if response.result != "OK":
                    raise ImapProtocolError(
                        f"{mode} {folder} returned {response.result}: {_lines_summary(response.lines)}",
                        command=mode,
                    )
                for line in response.lines:
                    parts = _line_text(line).split()
                    if len(parts) == 2 and parts[1].upper() == "EXISTS" and parts[0].isdigit():
                        exists = int(parts[0])
            yield ImapSession(client, folder, readonly, exists)
        finally:
            await self._close(client)

    async def probe(self) -> bool:
        """Connect and authenticate, nothing else."""
        async with self.session():
            return True

    async def ensure_folders(self, names: list[str]) -> list[str]:
        """Create whichever of ``names`` is missing; returns the ones created."""
        created = []
        async with self.session() as session:
            existing = {name.lower() for name in await session.list_folders()}
            for name in names:
                if name.lower() in existing:
                    continue
                await session.create_folder(name)
                logger.info(f"Created folder: {name}")
                created.append(name)
        return created
