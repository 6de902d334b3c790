"""Telegram HTML rendering of fetched mail.

Telegram's HTML parse mode only understands a handful of tags, so the
message body goes into a <pre><code> block and every interpolated value is
escaped.
"""

from __future__ import annotations

import html
import logging

from ..conventions import MAX_TEXT_LENGTH, REPLY_MARKER
from .models import FetchedMessage, MailAddress

logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """Human-readable size: bytes, KiB, MiB or GiB."""
    if size < 1024:
        return f"{size} bytes"
    if size < 1024**2:
        return f"{size / 1024:.2f} KiB"
    if size < 1024**3:
        return f"{size / 1024**2:.2f} MiB"
    return f"{size / 1024**3:.2f} GiB"


def truncate(text: str, max_length: int = MAX_TEXT_LENGTH) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def strip_reply(text: str) -> str:
    """Drop everything from the first quoted-reply marker onward.

    Matches lines like ``---- On Fri, 04 Apr 2025 19:31:58 +0530 Name
    <email@domain> wrote ---``.
    """
    start = text.find(REPLY_MARKER)
    if start == -1:
        return text.strip()
    return text[:start].strip()


def format_addresses(addresses: list[MailAddress]) -> str:
    if not addresses:
        return "Unknown"
    return ", ".join(str(a) for a in addresses)


def format_date(message: FetchedMessage) -> str:
    if message.date is None:
        return "Unknown"
    return message.date.strftime("%a, %d %b %Y %H:%M:%S %z").strip()


def format_mail(message: FetchedMessage) -> str:
    """Render a message as Telegram HTML."""

    def esc(value: str) -> str:
        return html.escape(value, quote=False)

    subject = message.subject or "(No Subject)"
    body = strip_reply(truncate(message.body)) or "No text"

    lines = [
        "📧",
        "",
        f"<b>From:</b> {esc(format_addresses(message.from_addrs))}",
        f"<b>To:</b> {esc(format_addresses(message.to_addrs))}",
        f"<b>Subject:</b> {esc(subject)}",
        f"<b>Date:</b> {esc(format_date(message))}",
        "",
        f"<pre><code>{esc(body)}</code></pre>",
    ]
    if message.attachments:
        listing = "\n".join(
            f"* {a.filename} ({format_bytes(a.size)})" for a in message.attachments
        )
        lines += ["", "<b>Attachments:</b>", esc(listing)]

    formatted = "\n".join(lines)
    logger.debug("Formatted message %d (%d chars)", message.uid, len(formatted))
    return formatted
