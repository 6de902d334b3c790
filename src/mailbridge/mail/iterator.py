"""Cursor-driven fetch iterator.

Turns "new mail" notifications plus the durable watermark into an ordered,
deduplicated, batch-bounded stream of fetched messages:

    search (UNSEEN, UID > watermark) -> filter/sort/truncate -> fetch each
        -> advance watermark -> yield

When a search comes back empty the iterator parks on the session's
new-mail future. That wait is the only place it blocks, and it is broken by
the session's terminal signal, which surfaces to the consumer as the
session error (or SessionClosed).

The watermark is written *before* a message is handed out. A crash between
fetch and delivery loses that message; it is never delivered twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import UTC, datetime

from ..conventions import BATCH_SIZE
from ..errors import FetchError, SearchError, SessionClosed
from ..store import CursorStore
from .models import FetchedMessage, parse_message
from .session import MailboxSession, SearchCriteria

logger = logging.getLogger(__name__)


class CursorFetchIterator:
    """Async iterator over messages newer than the stored watermark."""

    def __init__(
        self,
        session: MailboxSession,
        store: CursorStore,
        *,
        batch_size: int = BATCH_SIZE,
        started_at: datetime | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self._session = session
        self._store = store
        self._batch_size = batch_size
        self._started_at = started_at or datetime.now(UTC)
        self._pending: deque[int] = deque()
        # UIDs whose fetch failed in this session; excluded from later
        # candidate sets so an unfetchable tail cannot spin the loop.
        self._failed: set[int] = set()
        self.cycles = 0
        self.last_batch_truncated = False

    def __aiter__(self) -> CursorFetchIterator:
        return self

    async def __anext__(self) -> FetchedMessage:
        while True:
            self._raise_if_terminated()
            if not self._pending:
                if not await self._refill():
                    await self._wait_for_new_mail()
                continue
            message = await self._fetch(self._pending.popleft())
            if message is not None:
                return message

    def _raise_if_terminated(self) -> None:
        terminated = self._session.terminated
        if not terminated.done():
            return
        error = terminated.exception()
        if error is not None:
            raise error
        raise SessionClosed("mailbox session closed")

    async def _refill(self) -> bool:
        """Run one search cycle. Returns False when nothing is pending."""
        self.cycles += 1
        watermark = self._store.read()
        criteria = SearchCriteria(
            after_uid=watermark or 0,
            # No watermark yet: only mail that arrived after we started
            since=self._started_at if watermark is None else None,
        )
        logger.debug("Searching %s", criteria.to_imap())
        try:
            uids = await self._session.search(criteria)
        except SearchError:
            logger.warning("Mailbox search failed, skipping cycle", exc_info=True)
            return False

        # The watermark may have moved while the search was in flight
        floor = max(watermark or 0, self._store.read() or 0)
        self._failed = {uid for uid in self._failed if uid > floor}
        candidates = sorted(
            uid for uid in set(uids) if uid > floor and uid not in self._failed
        )
        self.last_batch_truncated = len(candidates) > self._batch_size
        batch = candidates[: self._batch_size]
        if not batch:
            return False

        if self.last_batch_truncated:
            logger.info(
                "Found %d new unread, processing first %d",
                len(candidates),
                len(batch),
            )
        else:
            logger.info("Found %d new unread: %s", len(batch), batch)
        self._pending.extend(batch)
        return True

    async def _wait_for_new_mail(self) -> None:
        logger.debug("No new messages, waiting for new-mail notification")
        new_mail = self._session.subscribe_new_mail()
        terminated = self._session.terminated
        try:
            await asyncio.wait({new_mail, terminated}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not new_mail.done():
                new_mail.cancel()
        if not terminated.done():
            logger.debug("New-mail notification received")

    async def _fetch(self, uid: int) -> FetchedMessage | None:
        logger.debug("Fetching message %d", uid)
        try:
            raw = await self._session.fetch_by_uid(uid)
        except FetchError:
            logger.warning("Skipping message %d", uid, exc_info=True)
            self._failed.add(uid)
            return None
        if raw is None:
            logger.info("Message %d vanished before fetch, skipping", uid)
            self._failed.add(uid)
            return None

        try:
            message = parse_message(uid, raw)
        except Exception:
            logger.warning("Skipping message %d: cannot parse it", uid, exc_info=True)
            self._failed.add(uid)
            return None
        self._store.write(uid)
        return message
