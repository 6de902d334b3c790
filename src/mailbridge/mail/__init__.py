"""Mailbox side of the bridge: sessions, fetch iterator and rendering."""

from .formatting import format_mail
from .iterator import CursorFetchIterator
from .models import FetchedMessage, MailAddress, parse_message
from .session import MailboxSession, MemoryMailboxSession, SearchCriteria

__all__ = [
    "CursorFetchIterator",
    "FetchedMessage",
    "MailAddress",
    "MailboxSession",
    "MemoryMailboxSession",
    "SearchCriteria",
    "format_mail",
    "parse_message",
]
