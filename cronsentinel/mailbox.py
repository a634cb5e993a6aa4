"""
Mailbox collaborator: find confirmation emails by subject within a window.

The IMAP implementation opens one read-only session per lookup and never
changes message flags.
"""

from __future__ import annotations

import codecs
import email
import email.policy
import email.utils
import imaplib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from .errors import MailboxUnavailableError
from .models import UTC, CandidateMessage

logger = logging.getLogger(__name__)

REGEX_SUBJECT_RE = re.compile(r"^/(.+)/$", re.DOTALL)
IMAP_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def subject_regex(subject_pattern: str) -> Optional[re.Pattern[str]]:
    """Compiled regex for ``/delimited/`` subject patterns, else None."""
    match = REGEX_SUBJECT_RE.match(subject_pattern)
    if not match:
        return None
    return re.compile(match.group(1))


def subject_matches(subject_pattern: str, subject: str) -> bool:
    regex = subject_regex(subject_pattern)
    if regex is not None:
        return regex.search(subject or "") is not None
    # IMAP SUBJECT search is a case-insensitive substring match.
    return subject_pattern.lower() in (subject or "").lower()


def render_html(markup: str) -> str:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def imap_date(value: datetime) -> str:
    value = value.astimezone(UTC)
    return f"{value.day:02d}-{IMAP_MONTHS[value.month - 1]}-{value.year}"


class Mailbox:
    def find_messages(self, subject_pattern: str, since: datetime) -> List[CandidateMessage]:
        raise NotImplementedError


@dataclass(frozen=True)
class MailboxSettings:
    host: str
    port: int
    user: str
    password: str
    folder: str = "INBOX"
    ssl: bool = True
    starttls: bool = False
    timeout_seconds: int = 30


def _part_text(part: EmailMessage) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeError) as exc:
        logger.warning("Undecodable %s part (%s); decoding leniently", part.get_content_type(), exc)
    charset = part.get_content_charset() or "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        charset = "utf-8"
    payload = part.get_payload(decode=True) or b""
    return payload.decode(charset, errors="replace")


def _body_parts(message: EmailMessage) -> Tuple[str, str]:
    plain = ""
    markup = ""
    plain_part = message.get_body(preferencelist=("plain",))
    if plain_part is not None:
        plain = _part_text(plain_part)
    html_part = message.get_body(preferencelist=("html",))
    if html_part is not None:
        markup = _part_text(html_part)
    return plain, markup


def _received_at(message: EmailMessage, internal_date: Optional[datetime]) -> datetime:
    raw = message.get("Date")
    if raw:
        try:
            parsed = email.utils.parsedate_to_datetime(str(raw))
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    if internal_date is not None:
        return internal_date
    return datetime.now(tz=UTC)


def parse_message(raw: bytes, fallback_id: str, internal_date: Optional[datetime] = None) -> CandidateMessage:
    message = email.message_from_bytes(raw, policy=email.policy.default)
    plain, markup = _body_parts(message)
    body = plain.strip() if plain.strip() else (render_html(markup) if markup else "")
    headers: Dict[str, str] = {}
    for key, value in message.items():
        name = key.lower()
        headers[name] = f"{headers[name]}, {value}" if name in headers else str(value)
    return CandidateMessage(
        message_id=str(message.get("Message-ID") or fallback_id).strip(),
        subject=str(message.get("Subject") or ""),
        body=body,
        html=markup,
        from_addr=str(message.get("From") or ""),
        to_addr=str(message.get("To") or ""),
        headers=headers,
        received_at=_received_at(message, internal_date),
    )


class ImapMailbox(Mailbox):
    def __init__(self, settings: MailboxSettings) -> None:
        self.settings = settings

    def _connect(self) -> imaplib.IMAP4:
        settings = self.settings
        if settings.ssl:
            conn = imaplib.IMAP4_SSL(settings.host, settings.port, timeout=settings.timeout_seconds)
        else:
            conn = imaplib.IMAP4(settings.host, settings.port, timeout=settings.timeout_seconds)
            if settings.starttls:
                conn.starttls()
        conn.login(settings.user, settings.password)
        typ, _ = conn.select(settings.folder, readonly=True)
        if typ != "OK":
            raise MailboxUnavailableError(f'Cannot open mailbox folder "{settings.folder}".')
        return conn

    def _search(self, conn: imaplib.IMAP4, subject_pattern: str, since: datetime) -> List[bytes]:
        criteria = ["SINCE", imap_date(since)]
        if subject_regex(subject_pattern) is not None:
            typ, data = conn.search(None, *criteria)
        elif subject_pattern.isascii():
            quoted = '"' + subject_pattern.replace("\\", "\\\\").replace('"', '\\"') + '"'
            typ, data = conn.search(None, *criteria, "SUBJECT", quoted)
        else:
            conn.literal = subject_pattern.encode("utf-8")
            typ, data = conn.search("UTF-8", *criteria, "SUBJECT")
        if typ != "OK":
            raise MailboxUnavailableError(f"IMAP search failed: {data!r}")
        return data[0].split() if data and data[0] else []

    def _fetch(self, conn: imaplib.IMAP4, num: bytes) -> Optional[CandidateMessage]:
        typ, data = conn.fetch(num, "(INTERNALDATE BODY.PEEK[])")
        if typ != "OK":
            raise MailboxUnavailableError(f"IMAP fetch failed for message {num!r}")
        for item in data:
            if not isinstance(item, tuple):
                continue
            envelope, raw = item
            internal_date = None
            parsed = imaplib.Internaldate2tuple(envelope)
            if parsed is not None:
                internal_date = datetime.fromtimestamp(time.mktime(parsed), tz=UTC)
            fallback_id = f"imap:{self.settings.folder}:{num.decode()}"
            try:
                return parse_message(raw, fallback_id, internal_date)
            except (LookupError, UnicodeError, ValueError) as exc:
                logger.warning("Skipping unparseable message %s: %s", fallback_id, exc)
                return None
        return None

    def find_messages(self, subject_pattern: str, since: datetime) -> List[CandidateMessage]:
        since = since.astimezone(UTC)
        conn: Optional[imaplib.IMAP4] = None
        try:
            conn = self._connect()
            ids = self._search(conn, subject_pattern, since)
            logger.debug("IMAP search for %r since %s returned %s id(s)", subject_pattern, since.isoformat(), len(ids))
            messages: List[CandidateMessage] = []
            for num in ids:
                message = self._fetch(conn, num)
                if message is None:
                    continue
                # SINCE has day granularity; tighten to the exact window here.
                if message.received_at < since:
                    continue
                if not subject_matches(subject_pattern, message.subject):
                    continue
                messages.append(message)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise MailboxUnavailableError(f"IMAP {self.settings.host}: {exc}") from exc
        finally:
            if conn is not None:
                try:
                    conn.logout()
                except (imaplib.IMAP4.error, OSError) as exc:
                    logger.debug("IMAP logout failed: %s", exc)
        messages.sort(key=lambda message: message.received_at, reverse=True)
        return messages
