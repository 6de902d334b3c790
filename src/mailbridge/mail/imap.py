"""IMAP mailbox session on top of aioimaplib.

All operations are UID-based; sequence numbers shift while we iterate and
are never used. Commands are serialized through one lock. New-mail
notifications come from IDLE, which is only running while someone is
subscribed and is interrupted whenever another command is queued.

Transport failures (dropped socket, timeouts, protocol aborts) fail the
whole session. NO/BAD answers to SEARCH or FETCH are per-operation errors.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any

import aioimaplib

from ..errors import (
    ActionError,
    FetchError,
    LockError,
    MailboxConnectionError,
    SearchError,
    SessionClosed,
    SessionError,
)
from ..schema import ImapSettings
from .session import SearchCriteria, SessionSignals

logger = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (aioimaplib.Abort, aioimaplib.CommandTimeout, OSError, TimeoutError)

# How often a running IDLE checks whether a command is waiting for the lock
_IDLE_POLL_SECONDS = 1.0
_LOGOUT_TIMEOUT_SECONDS = 5.0

_EXISTS_RE = re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE)
_EXPUNGE_RE = re.compile(r"(\d+)\s+EXPUNGE", re.IGNORECASE)
_UID_RE = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_INTERNALDATE_RE = re.compile(r'INTERNALDATE\s+"([^"]+)"', re.IGNORECASE)
_LIST_RE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?:"[^"]*"|NIL)\s+(?P<name>.+)$')


def _decode(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _as_lines(lines: Any) -> list[Any]:
    if lines is None:
        return []
    if isinstance(lines, (bytes, bytearray, str)):
        return [lines]
    return list(lines)


def _describe(response: Any) -> str:
    return " ".join(_decode(line) for line in _as_lines(response.lines)).strip()


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    if name.startswith('"') and name.endswith('"'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_search_response(lines: Iterable[Any]) -> list[int]:
    """Extract UIDs from the untagged part of a UID SEARCH response."""
    for raw in lines:
        text = _decode(raw).strip()
        if text.startswith("*"):
            text = text[1:].strip()
        if text.upper().startswith("SEARCH"):
            text = text[len("SEARCH") :].strip()
        tokens = text.split()
        if tokens and all(token.isdigit() for token in tokens):
            return [int(token) for token in tokens]
    return []


def parse_internal_dates(lines: Iterable[Any]) -> dict[int, datetime]:
    """Map UID -> INTERNALDATE from a UID FETCH (UID INTERNALDATE) response."""
    result: dict[int, datetime] = {}
    for raw in lines:
        text = _decode(raw)
        uid_match = _UID_RE.search(text)
        date_match = _INTERNALDATE_RE.search(text)
        if uid_match is None or date_match is None:
            continue
        try:
            received = datetime.strptime(
                date_match.group(1).strip(), "%d-%b-%Y %H:%M:%S %z"
            )
        except ValueError:
            logger.debug("Unparseable INTERNALDATE in %r", text)
            continue
        result[int(uid_match.group(1))] = received
    return result


def parse_trash_folder(lines: Iterable[Any]) -> str | None:
    """Return the mailbox carrying the \\Trash special-use flag, if any."""
    for raw in lines:
        text = _decode(raw).strip()
        if text.startswith("* LIST"):
            text = text[len("* LIST") :].strip()
        match = _LIST_RE.match(text)
        if match is None:
            continue
        flags = match.group("flags").lower().split()
        if "\\trash" in flags:
            return match.group("name").strip().strip('"')
    return None


class ImapMailboxLock:
    """Client-side lock on the selected mailbox, released exactly once."""

    def __init__(self, path: str, mutex: asyncio.Lock) -> None:
        self.path = path
        self._mutex = mutex
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._mutex.release()
        logger.debug("Released lock on %s", self.path)


class ImapMailboxSession(SessionSignals):
    """One authenticated IMAP connection. Implements MailboxSession protocol."""

    def __init__(
        self,
        settings: ImapSettings,
        client_factory: Callable[..., Any] | None = None,
    ) -> None:
        super().__init__()
        self._settings = settings
        self._client_factory = client_factory
        self._client: Any = None
        self._command_lock = asyncio.Lock()
        self._mailbox_mutex = asyncio.Lock()
        self._queued = 0
        self._idle_task: asyncio.Task[None] | None = None
        self._idling = False
        self._exists = 0
        self._closing = False

    # --- Connection ---

    def _make_client(self) -> Any:
        if self._client_factory is not None:
            return self._client_factory()
        s = self._settings
        cls = aioimaplib.IMAP4_SSL if s.secure else aioimaplib.IMAP4
        return cls(
            host=s.host,
            port=s.port,
            timeout=s.timeout,
            conn_lost_cb=self._on_connection_lost,
        )

    def _on_connection_lost(self, exc: Exception | None) -> None:
        if self._closing:
            self._mark_closed()
        elif exc is not None:
            self._fail(MailboxConnectionError(f"connection lost: {exc}"))
        else:
            logger.info("IMAP server closed the connection")
            self._mark_closed()

    async def connect(self) -> None:
        self._ensure_usable()
        s = self._settings
        logger.info("Connecting to imap%s://%s:%d", "s" if s.secure else "", s.host, s.port)
        try:
            self._client = self._make_client()
            await self._client.wait_hello_from_server()
            response = await self._client.login(s.user, s.password)
        except _TRANSPORT_ERRORS as e:
            raise MailboxConnectionError(f"cannot connect to {s.host}:{s.port}: {e}") from e
        if response.result != "OK":
            raise MailboxConnectionError(f"login rejected by {s.host}: {_describe(response)}")
        logger.info("Logged in to %s as %s", s.host, s.user)

    def _require_client(self) -> Any:
        self._ensure_usable()
        if self._client is None:
            raise SessionClosed("mailbox session is not connected")
        return self._client

    async def _run(
        self,
        label: str,
        call: Callable[[Any], Awaitable[Any]],
        *,
        notify: bool = True,
    ) -> Any:
        """Run one IMAP command under the command lock.

        A queued command makes a running IDLE step aside. Transport errors
        fail the session; the caller sees MailboxConnectionError.
        """
        client = self._require_client()
        self._queued += 1
        dequeued = False
        try:
            async with self._command_lock:
                self._queued -= 1
                dequeued = True
                self._ensure_usable()
                try:
                    response = await call(client)
                except _TRANSPORT_ERRORS as e:
                    error = MailboxConnectionError(f"{label} failed: {e}")
                    self._fail(error)
                    raise error from e
        finally:
            if not dequeued:
                self._queued -= 1
        if self._track_size(response.lines) and notify:
            self._notify_new_mail()
        return response

    def _track_size(self, lines: Any) -> bool:
        """Follow untagged EXISTS/EXPUNGE. Returns True if the mailbox grew."""
        grew = False
        for raw in _as_lines(lines):
            if isinstance(raw, bytearray):
                # literal message data, never a status line
                continue
            text = _decode(raw)
            if (match := _EXISTS_RE.search(text)) is not None:
                count = int(match.group(1))
                grew = grew or count > self._exists
                self._exists = count
            elif _EXPUNGE_RE.search(text) is not None:
                self._exists = max(0, self._exists - 1)
        return grew

    # --- MailboxSession operations ---

    async def lock(self, mailbox: str) -> ImapMailboxLock:
        if self._mailbox_mutex.locked():
            raise LockError(f"{mailbox} is already locked by this session")
        await self._mailbox_mutex.acquire()
        try:
            # the initial EXISTS count is a baseline, not new mail
            response = await self._run(
                f"SELECT {mailbox}",
                lambda c: c.select(quote_mailbox(mailbox)),
                notify=False,
            )
        except BaseException:
            self._mailbox_mutex.release()
            raise
        if response.result != "OK":
            self._mailbox_mutex.release()
            raise LockError(f"cannot select {mailbox}: {_describe(response)}")
        logger.info("Locked mailbox %s (%d messages)", mailbox, self._exists)
        return ImapMailboxLock(mailbox, self._mailbox_mutex)

    async def noop(self) -> None:
        if self._idling:
            # IDLE traffic already keeps the connection alive
            return
        await self._run("NOOP", lambda c: c.noop())

    def subscribe_new_mail(self) -> asyncio.Future[None]:
        future = super().subscribe_new_mail()
        if not future.done() and (self._idle_task is None or self._idle_task.done()):
            self._idle_task = asyncio.create_task(self._idle_until_new_mail())
        return future

    def _want_idle(self) -> bool:
        return (
            not self.is_terminated
            and self._new_mail is not None
            and not self._new_mail.done()
        )

    async def _idle_until_new_mail(self) -> None:
        try:
            while self._want_idle():
                async with self._command_lock:
                    if not self._want_idle():
                        break
                    await self._idle_once(self._require_client())
                # give queued commands their turn before idling again
                await asyncio.sleep(0)
        except _TRANSPORT_ERRORS as e:
            self._fail(MailboxConnectionError(f"IDLE failed: {e}"))
        except SessionError as e:
            logger.debug("IDLE stopped: %s", e)
        except Exception as e:
            # the new-mail wait must never outlive the IDLE task
            logger.exception("IDLE loop crashed")
            self._fail(MailboxConnectionError(f"IDLE crashed: {e!r}"))

    async def _idle_once(self, client: Any) -> None:
        self._idling = True
        try:
            idle = await client.idle_start(timeout=self._settings.idle_timeout)
            while client.has_pending_idle():
                if self._queued or not self._want_idle():
                    break
                try:
                    lines = await asyncio.wait_for(
                        client.wait_server_push(), timeout=_IDLE_POLL_SECONDS
                    )
                except TimeoutError:
                    continue
                if lines == aioimaplib.STOP_WAIT_SERVER_PUSH:
                    break
                if self._track_size(lines):
                    logger.debug("IDLE reported new mail")
                    self._notify_new_mail()
                    break
            if client.has_pending_idle():
                client.idle_done()
            await asyncio.wait_for(idle, timeout=self._settings.timeout)
        finally:
            self._idling = False

    async def search(self, criteria: SearchCriteria) -> list[int]:
        response = await self._run(
            "UID SEARCH", lambda c: c.uid_search(criteria.to_imap(), charset=None)
        )
        if response.result != "OK":
            raise SearchError(f"UID SEARCH {criteria.to_imap()}: {_describe(response)}")
        uids = parse_search_response(_as_lines(response.lines))
        if criteria.since is not None and uids:
            uids = await self._received_since(uids, criteria.since)
        return sorted(uids)

    async def _received_since(self, uids: list[int], since: datetime) -> list[int]:
        """Narrow a day-granular SINCE result to the exact instant."""
        uid_set = ",".join(str(uid) for uid in uids)
        response = await self._run(
            "UID FETCH INTERNALDATE",
            lambda c: c.uid("fetch", uid_set, "(UID INTERNALDATE)"),
        )
        if response.result != "OK":
            raise SearchError(f"UID FETCH INTERNALDATE: {_describe(response)}")
        dates = parse_internal_dates(_as_lines(response.lines))
        return [uid for uid in uids if uid in dates and dates[uid] >= since]

    async def fetch_by_uid(self, uid: int) -> bytes | None:
        response = await self._run(
            f"UID FETCH {uid}", lambda c: c.uid("fetch", str(uid), "(BODY.PEEK[])")
        )
        if response.result != "OK":
            raise FetchError(uid, _describe(response))
        for line in _as_lines(response.lines):
            if isinstance(line, bytearray):
                return bytes(line)
        return None

    async def add_flags(self, uid: int, flags: list[str]) -> None:
        flag_list = "(" + " ".join(flags) + ")"
        response = await self._run(
            f"UID STORE {uid}", lambda c: c.uid("store", str(uid), "+FLAGS", flag_list)
        )
        if response.result != "OK":
            raise ActionError(f"cannot flag UID {uid}: {_describe(response)}")

    async def move(self, uid: int, destination: str) -> None:
        target = quote_mailbox(destination)
        client = self._require_client()
        if client.has_capability("MOVE"):
            response = await self._run(
                f"UID MOVE {uid}", lambda c: c.uid("move", str(uid), target)
            )
            if response.result != "OK":
                raise ActionError(f"cannot move UID {uid}: {_describe(response)}")
            return

        # No MOVE extension: copy, flag deleted, expunge
        response = await self._run(
            f"UID COPY {uid}", lambda c: c.uid("copy", str(uid), target)
        )
        if response.result != "OK":
            raise ActionError(f"cannot copy UID {uid}: {_describe(response)}")
        await self.add_flags(uid, ["\\Deleted"])
        response = await self._run("EXPUNGE", lambda c: c.expunge())
        if response.result != "OK":
            logger.warning("Expunge after moving UID %d failed: %s", uid, _describe(response))

    async def find_trash_folder(self) -> str | None:
        response = await self._run("LIST", lambda c: c.list('""', "*"))
        if response.result != "OK":
            logger.warning("LIST failed: %s", _describe(response))
            return None
        return parse_trash_folder(_as_lines(response.lines))

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        if self._idle_task is not None and not self._idle_task.done():
            self._idle_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._idle_task
        self._idle_task = None

        client, self._client = self._client, None
        if client is not None:
            try:
                if client.has_pending_idle():
                    client.idle_done()
                await asyncio.wait_for(client.logout(), timeout=_LOGOUT_TIMEOUT_SECONDS)
            except (*_TRANSPORT_ERRORS, aioimaplib.Error):
                logger.debug("Error during IMAP logout", exc_info=True)
        self._mark_closed()
        logger.info("IMAP session closed")
