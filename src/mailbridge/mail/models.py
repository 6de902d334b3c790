"""Data models for fetched mail.

Raw RFC 822 bytes are turned into a ``FetchedMessage`` with the standard
library parser. Only the fields the bridge renders and routes on are
extracted; anything exotic in the MIME tree is ignored.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class MailAddress:
    """An email address with optional display name."""

    address: str
    name: str = ""

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


@dataclass(frozen=True)
class Attachment:
    filename: str
    size: int


@dataclass
class FetchedMessage:
    """A parsed message tagged with its UID.

    Identity is the UID alone; two fetches of the same UID are the same
    message regardless of content.
    """

    uid: int
    subject: str = ""
    from_addrs: list[MailAddress] = field(default_factory=list)
    to_addrs: list[MailAddress] = field(default_factory=list)
    date: datetime | None = None
    text: str = ""
    html: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    @property
    def body(self) -> str:
        """Plain text body, falling back to tag-stripped HTML."""
        if self.text:
            return self.text
        return _TAG_RE.sub("", self.html)


def _addresses(msg: EmailMessage, header: str) -> list[MailAddress]:
    values = [str(v) for v in msg.get_all(header) or []]
    return [
        MailAddress(address=addr.strip(), name=name.strip())
        for name, addr in getaddresses(values)
        if addr
    ]


def _date(msg: EmailMessage) -> datetime | None:
    header = msg.get("Date")
    if header is None:
        return None
    try:
        return header.datetime
    except (AttributeError, ValueError, TypeError):
        logger.debug("Unparseable Date header %r", str(header))
        return None


def _body(msg: EmailMessage, subtype: str) -> str:
    part = msg.get_body(preferencelist=(subtype,))
    if part is None or part.get_content_subtype() != subtype:
        return ""
    try:
        return part.get_content()
    except (LookupError, ValueError):
        # Unknown charset or broken transfer encoding
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _attachments(msg: EmailMessage) -> list[Attachment]:
    result: list[Attachment] = []
    for part in msg.iter_attachments():
        payload = part.get_payload(decode=True) or b""
        result.append(
            Attachment(filename=part.get_filename() or "unnamed", size=len(payload))
        )
    return result


def parse_message(uid: int, raw: bytes) -> FetchedMessage:
    """Parse raw RFC 822 bytes into a FetchedMessage."""
    msg = BytesParser(policy=policy.default).parsebytes(raw)
    return FetchedMessage(
        uid=uid,
        subject=str(msg.get("Subject") or "").strip(),
        from_addrs=_addresses(msg, "From"),
        to_addrs=_addresses(msg, "To"),
        date=_date(msg),
        text=_body(msg, "plain"),
        html=_body(msg, "html"),
        attachments=_attachments(msg) if msg.is_multipart() else [],
    )
