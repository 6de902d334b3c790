"""Mailbox session abstraction.

Provides a Protocol for the mailbox capability the bridge needs and two
implementations:
- MemoryMailboxSession: In-memory, no network calls (testing/dry runs)
- ImapMailboxSession (imap.py): aioimaplib over IMAP4/IMAP4S (production)

A session is single-use. Once it reports a terminal signal (``terminated``
resolves, with an exception for errors) it must not be used again; the
supervisor builds a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from ..errors import (
    ActionError,
    FetchError,
    LockError,
    MailboxConnectionError,
    SearchError,
    SessionClosed,
    SessionError,
)

logger = logging.getLogger(__name__)

_IMAP_MONTHS = "Jan Feb Mar Apr May Jun Jul Aug Sep Oct Nov Dec".split()


@dataclass(frozen=True)
class SearchCriteria:
    """Unseen messages with UID strictly above ``after_uid``.

    ``since`` additionally restricts to messages received at or after that
    instant (first-run scoping).
    """

    after_uid: int = 0
    unseen: bool = True
    since: datetime | None = None

    def to_imap(self) -> str:
        """Render as an IMAP SEARCH key string.

        IMAP SINCE only has day granularity; implementations filter the
        exact instant themselves.
        """
        parts = []
        if self.unseen:
            parts.append("UNSEEN")
        parts.append(f"UID {self.after_uid + 1}:*")
        if self.since is not None:
            day = self.since.astimezone(UTC)
            parts.append(f"SINCE {day.day}-{_IMAP_MONTHS[day.month - 1]}-{day.year}")
        return " ".join(parts)

    def matches(self, uid: int, seen: bool, received_at: datetime) -> bool:
        if uid <= self.after_uid:
            return False
        if self.unseen and seen:
            return False
        return self.since is None or received_at >= self.since


@runtime_checkable
class MailboxLock(Protocol):
    """A held lock on one mailbox."""

    path: str

    def release(self) -> None:
        """Release the lock. Must be idempotent."""
        ...


@runtime_checkable
class MailboxSession(Protocol):
    """Protocol for the mailbox operations the bridge relies on."""

    @property
    def terminated(self) -> asyncio.Future[None]:
        """Resolves when the session closes; carries the exception on error."""
        ...

    async def connect(self) -> None:
        """Connect and authenticate. Raises MailboxConnectionError."""
        ...

    async def lock(self, mailbox: str) -> MailboxLock:
        """Select and lock *mailbox* for this session. Raises LockError."""
        ...

    async def noop(self) -> None:
        """Keep-alive round trip."""
        ...

    def subscribe_new_mail(self) -> asyncio.Future[None]:
        """Future resolving on the next "mailbox grew" event."""
        ...

    async def search(self, criteria: SearchCriteria) -> list[int]:
        """Return matching UIDs in ascending order. Raises SearchError."""
        ...

    async def fetch_by_uid(self, uid: int) -> bytes | None:
        """Return raw RFC 822 bytes, or None if the UID is gone."""
        ...

    async def add_flags(self, uid: int, flags: list[str]) -> None:
        """Add flags to one message. Raises ActionError."""
        ...

    async def move(self, uid: int, destination: str) -> None:
        """Move one message to another folder. Raises ActionError."""
        ...

    async def find_trash_folder(self) -> str | None:
        """Return the folder flagged \\Trash, if the server advertises one."""
        ...

    async def close(self) -> None:
        """Close the session. Must be idempotent."""
        ...


class SessionSignals:
    """Terminal-signal and new-mail plumbing shared by session implementations.

    ``terminated`` is created lazily so sessions can be built outside a
    running loop. New-mail notification is single-slot: a notification that
    arrives while nobody is subscribed is remembered as one pending flag,
    never queued.
    """

    def __init__(self) -> None:
        self._terminated: asyncio.Future[None] | None = None
        self._new_mail: asyncio.Future[None] | None = None
        self._mail_pending = False

    @property
    def terminated(self) -> asyncio.Future[None]:
        if self._terminated is None:
            self._terminated = asyncio.get_running_loop().create_future()
        return self._terminated

    @property
    def is_terminated(self) -> bool:
        return self._terminated is not None and self._terminated.done()

    def _fail(self, error: SessionError) -> None:
        """Mark the session failed. Only the first signal counts."""
        if self.is_terminated:
            return
        logger.warning("Mailbox session failed: %s", error)
        self.terminated.set_exception(error)
        self._cancel_new_mail()

    def _mark_closed(self) -> None:
        if self.is_terminated:
            return
        self.terminated.set_result(None)
        self._cancel_new_mail()

    def _cancel_new_mail(self) -> None:
        if self._new_mail is not None and not self._new_mail.done():
            self._new_mail.cancel()
        self._new_mail = None

    def _ensure_usable(self) -> None:
        terminated = self._terminated
        if terminated is None or not terminated.done():
            return
        error = terminated.exception()
        if error is not None:
            raise error
        raise SessionClosed("mailbox session is closed")

    def subscribe_new_mail(self) -> asyncio.Future[None]:
        self._ensure_usable()
        if self._new_mail is None or self._new_mail.done():
            self._new_mail = asyncio.get_running_loop().create_future()
        if self._mail_pending:
            self._mail_pending = False
            self._new_mail.set_result(None)
        return self._new_mail

    def _notify_new_mail(self) -> None:
        if self._new_mail is not None and not self._new_mail.done():
            self._new_mail.set_result(None)
        else:
            self._mail_pending = True


@dataclass
class MemoryLock:
    path: str
    session: MemoryMailboxSession
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.session.lock_releases += 1
        self.session.held_lock = None


@dataclass
class StoredMessage:
    """A message held by MemoryMailboxSession."""

    uid: int
    raw: bytes
    seen: bool = False
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    folder: str = "INBOX"
    flags: set[str] = field(default_factory=set)


class MemoryMailboxSession(SessionSignals):
    """In-memory mailbox session for testing and dry runs.

    Records all operations for inspection. No network calls.
    Implements MailboxSession protocol.
    """

    def __init__(
        self,
        messages: list[StoredMessage] | None = None,
        trash_folder: str | None = "Trash",
    ) -> None:
        super().__init__()
        self.messages: dict[int, StoredMessage] = {
            m.uid: m for m in messages or []
        }
        self.trash_folder = trash_folder
        self.connected = False
        self.closed = False
        self.held_lock: MemoryLock | None = None
        self.lock_releases = 0
        self.close_calls = 0
        self.noop_calls = 0
        self.searches: list[SearchCriteria] = []
        self.fetches: list[int] = []
        # Failure injection (test helpers)
        self.connect_error: Exception | None = None
        self.lock_error: Exception | None = None
        self.search_error: Exception | None = None
        self.fetch_errors: set[int] = set()
        self.stale_search_results: list[int] | None = None

    async def connect(self) -> None:
        self._ensure_usable()
        if self.connect_error is not None:
            raise MailboxConnectionError(str(self.connect_error))
        self.connected = True

    async def lock(self, mailbox: str) -> MemoryLock:
        self._ensure_usable()
        if self.lock_error is not None:
            raise LockError(str(self.lock_error))
        if self.held_lock is not None:
            raise LockError(f"{mailbox} is already locked")
        self.held_lock = MemoryLock(path=mailbox, session=self)
        return self.held_lock

    async def noop(self) -> None:
        self._ensure_usable()
        self.noop_calls += 1

    async def search(self, criteria: SearchCriteria) -> list[int]:
        self._ensure_usable()
        self.searches.append(criteria)
        if self.search_error is not None:
            raise SearchError(str(self.search_error))
        if self.stale_search_results is not None:
            stale, self.stale_search_results = self.stale_search_results, None
            return stale
        return sorted(
            m.uid
            for m in self.messages.values()
            if m.folder == "INBOX" and criteria.matches(m.uid, m.seen, m.received_at)
        )

    async def fetch_by_uid(self, uid: int) -> bytes | None:
        self._ensure_usable()
        self.fetches.append(uid)
        if uid in self.fetch_errors:
            raise FetchError(uid, "injected failure")
        message = self.messages.get(uid)
        return message.raw if message is not None else None

    async def add_flags(self, uid: int, flags: list[str]) -> None:
        self._ensure_usable()
        message = self.messages.get(uid)
        if message is None:
            raise ActionError(f"UID {uid} not found")
        message.flags.update(flags)
        if "\\Seen" in flags:
            message.seen = True

    async def move(self, uid: int, destination: str) -> None:
        self._ensure_usable()
        message = self.messages.get(uid)
        if message is None:
            raise ActionError(f"UID {uid} not found")
        message.folder = destination

    async def find_trash_folder(self) -> str | None:
        self._ensure_usable()
        return self.trash_folder

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_calls += 1
        self.connected = False
        self._mark_closed()

    # --- Test helpers ---

    def deliver(
        self,
        uid: int,
        raw: bytes,
        *,
        seen: bool = False,
        received_at: datetime | None = None,
    ) -> None:
        """Add a message and fire the new-mail notification."""
        self.messages[uid] = StoredMessage(
            uid=uid,
            raw=raw,
            seen=seen,
            received_at=received_at or datetime.now(UTC),
        )
        self._notify_new_mail()

    def drop(self, error: Exception | None = None) -> None:
        """Simulate the server dropping the connection."""
        self.connected = False
        if error is None:
            self._mark_closed()
        else:
            self._fail(MailboxConnectionError(str(error)))
