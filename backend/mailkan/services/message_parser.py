"""Converts raw IMAP FETCH responses into board messages."""

import email
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email import policy
from email.header import decode_header, make_header
from email.utils import parsedate_to_datetime
from typing import Iterable, Optional, Union

from bs4 import BeautifulSoup

from mailkan.exceptions import ParseFailure
from mailkan.models.message import Message

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200
ELLIPSIS = "…"

NO_SUBJECT = "No Subject"
UNKNOWN_SENDER = "Unknown Sender"

_UID_RE = re.compile(r"\bUID (\d+)", re.IGNORECASE)
_SEQ_RE = re.compile(r"^\*?\s*(\d+) FETCH\b", re.IGNORECASE)
_BOUNDARY_RE = re.compile(rb"\r?\n\r?\n")
_INTERNALDATE_RE = re.compile(
    r'INTERNALDATE "\s*(\d{1,2})-([A-Za-z]{3})-(\d{4}) (\d{2}):(\d{2}):(\d{2}) ([+-])(\d{2})(\d{2})"',
    re.IGNORECASE,
)
_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")


@dataclass
class RawFetch:
    """One message out of a FETCH response: attribute text plus the literal."""

    attributes: str
    literal: bytes = b""

    @property
    def sequence(self) -> Optional[int]:
        match = _SEQ_RE.search(self.attributes)
        return int(match.group(1)) if match else None


def _to_text(line: Union[bytes, bytearray, str]) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return line


def split_fetch_response(lines: Iterable[Union[bytes, bytearray, str]]) -> list[RawFetch]:
    """
    Group aioimaplib FETCH response lines into one RawFetch per message.

    aioimaplib hands literals back as ``bytearray`` and everything else as
    ``bytes``; the attribute line that opens a message contains ``FETCH``.
    Lines outside any message (the tagged completion text) are ignored.
    """
    fetches: list[RawFetch] = []
    current: Optional[RawFetch] = None
    awaiting_tail = False

    for line in lines:
        if isinstance(line, bytearray):
            if current is not None:
                current.literal += bytes(line)
            continue

        text = _to_text(line)
        if _SEQ_RE.search(text):
            current = RawFetch(attributes=text)
            fetches.append(current)
            awaiting_tail = text.rstrip().endswith("}")
        elif awaiting_tail and current is not None:
            # Attributes sent after the literal, e.g. " UID 42 FLAGS (\Seen))"
            current.attributes += " " + text.strip()
            awaiting_tail = False

    return fetches


def parse_uid(attributes: str) -> Optional[int]:
    match = _UID_RE.search(attributes)
    return int(match.group(1)) if match else None


def split_header_body(raw: bytes) -> tuple[bytes, bytes]:
    """Split at the first blank line; a message without one is all header."""
    match = _BOUNDARY_RE.search(raw)
    if not match:
        return raw, b""
    return raw[: match.start()], raw[match.end():]


def unfold_headers(header_block: str) -> list[str]:
    """Join continuation lines (leading space or tab) onto their logical header."""
    unfolded: list[str] = []
    for line in header_block.splitlines():
        if line[:1] in (" ", "\t"):
            if unfolded:
                unfolded[-1] += " " + line.strip()
            continue
        if line:
            unfolded.append(line.rstrip())
    return unfolded


def _decode_header_value(value: str) -> str:
    try:
        return str(make_header(decode_header(value))).strip()
    except (UnicodeError, LookupError, ValueError):
        return value.strip()


def parse_headers(raw: bytes) -> dict[str, str]:
    """Return the first occurrence of every header, keyed by lowercased name."""
    header_block, _ = split_header_body(raw)
    headers: dict[str, str] = {}
    for line in unfold_headers(header_block.decode("utf-8", errors="replace")):
        name, sep, value = line.partition(":")
        if not sep:
            continue
        key = name.strip().lower()
        if key not in headers:
            headers[key] = _decode_header_value(value)
    return headers


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """RFC 2822 / IMAP date with English day and month names, or None."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_internaldate(attributes: str) -> Optional[datetime]:
    """The server's INTERNALDATE (arrival time) from FETCH attributes, or None."""
    match = _INTERNALDATE_RE.search(attributes)
    if not match:
        return None
    day, month, year, hour, minute, second, sign, tz_hours, tz_minutes = match.groups()
    try:
        offset = timedelta(hours=int(tz_hours), minutes=int(tz_minutes))
        return datetime(
            int(year), _MONTHS.index(month.lower()) + 1, int(day),
            int(hour), int(minute), int(second),
            tzinfo=timezone(-offset if sign == "-" else offset),
        )
    except ValueError:
        return None


def extract_body(raw: bytes) -> tuple[str, str]:
    """Extract text and HTML body from a MIME message."""
    msg = email.message_from_bytes(raw, policy=policy.default)
    text_body = ""
    html_body = ""

    for part in msg.walk():
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")):
            continue

        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue

        payload = part.get_payload(decode=True)
        if payload is None:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            decoded = payload.decode(charset, errors="replace")
        except LookupError:
            decoded = payload.decode("utf-8", errors="replace")

        if content_type == "text/plain" and not text_body:
            text_body = decoded
        elif content_type == "text/html" and not html_body:
            html_body = decoded

    return text_body, html_body


def make_preview(text: str, html: str, limit: int = PREVIEW_LENGTH) -> str:
    """Plain-text snippet of whichever body is present, cut to ``limit`` characters."""
    if text.strip():
        source = text
    elif html.strip():
        source = BeautifulSoup(html, "lxml").get_text(separator=" ")
    else:
        return ""
    clean = " ".join(source.split())
    if len(clean) <= limit:
        return clean
    return clean[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def parse_fetch(raw: RawFetch, column: str, folder: str) -> Message:
    """
    Turn one FETCH response into a Message.

    Raises ParseFailure when the response carries no UID; callers log and
    skip that message without aborting the batch.
    """
    uid = parse_uid(raw.attributes)
    if uid is None:
        raise ParseFailure(f"No UID in FETCH response from {folder}: {raw.attributes[:120]!r}")

    headers = parse_headers(raw.literal)

    date = parse_date(headers.get("date")) or parse_internaldate(raw.attributes)
    if date is None:
        # Known approximation: undated mail sorts as "now"
        logger.debug(f"No usable Date header or INTERNALDATE for UID {uid} in {folder}")
        date = datetime.now(timezone.utc)

    text_body, html_body = extract_body(raw.literal) if raw.literal else ("", "")

    return Message(
        uid=uid,
        seqno=raw.sequence,
        subject=headers.get("subject") or NO_SUBJECT,
        sender=headers.get("from") or UNKNOWN_SENDER,
        recipients=headers.get("to", ""),
        date=date,
        text=text_body,
        html=html_body,
        preview=make_preview(text_body, html_body),
        column=column,
        folder=folder,
    )


def parse_fetch_response(
    lines: Iterable[Union[bytes, bytearray, str]], column: str, folder: str
) -> list[Message]:
    """Parse every message in a FETCH response, skipping the unparseable ones."""
    messages = []
    for raw in split_fetch_response(lines):
        try:
            messages.append(parse_fetch(raw, column, folder))
        except ParseFailure as e:
            logger.warning(f"Skipping message: {e}")
    return messages
