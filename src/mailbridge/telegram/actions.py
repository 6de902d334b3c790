"""Inline mailbox actions.

Primary deliveries carry "Read" and "Delete" buttons. Presses arrive as
callback queries through getUpdates; the UpdatePoller feeds them to the
MailActionHandler, which applies them to whichever mailbox session is
active at that moment.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from ..conventions import (
    CALLBACK_DELETE_PREFIX,
    CALLBACK_READ_PREFIX,
    UPDATES_LONG_POLL_SECONDS,
)
from ..errors import ActionError, DeliveryError, SessionError
from ..mail.session import MailboxSession
from .client import CallbackQuery, ChatClient, InlineButton

logger = logging.getLogger(__name__)

NOT_CONNECTED_TEXT = "IMAP connection not established"


class ActiveMailbox(Protocol):
    session: MailboxSession | None
    trash_folder: str


def mail_buttons(uid: int) -> list[InlineButton]:
    return [
        InlineButton(text="Read", callback_data=f"{CALLBACK_READ_PREFIX}{uid}"),
        InlineButton(text="Delete", callback_data=f"{CALLBACK_DELETE_PREFIX}{uid}"),
    ]


def parse_callback(data: str) -> tuple[str, int] | None:
    """Split callback data into (action, uid). None if it isn't ours."""
    for action, prefix in (
        ("read", CALLBACK_READ_PREFIX),
        ("delete", CALLBACK_DELETE_PREFIX),
    ):
        if data.startswith(prefix):
            value = data[len(prefix) :]
            if value.isdigit():
                return action, int(value)
    return None


class MailActionHandler:
    """Applies button presses to the active mailbox session."""

    def __init__(
        self,
        chat: ChatClient,
        mailbox_provider: Callable[[], ActiveMailbox | None],
    ) -> None:
        self._chat = chat
        self._mailbox_provider = mailbox_provider

    async def handle(self, query: CallbackQuery) -> str | None:
        """Handle one callback query. Returns the answer text sent back."""
        parsed = parse_callback(query.data)
        if parsed is None:
            logger.debug("Ignoring unknown callback data %r", query.data)
            return None
        action, uid = parsed

        mailbox = self._mailbox_provider()
        if mailbox is None or mailbox.session is None:
            await self._chat.answer_callback(query.id, NOT_CONNECTED_TEXT)
            return NOT_CONNECTED_TEXT

        try:
            if action == "read":
                await mailbox.session.add_flags(uid, ["\\Seen"])
                answer = "Marked as read"
            else:
                await mailbox.session.move(uid, mailbox.trash_folder)
                answer = "Deleted message"
        except (ActionError, SessionError) as e:
            logger.warning("Action %s on message %d failed: %s", action, uid, e)
            answer = f"Failed: {e}"
            await self._chat.answer_callback(query.id, answer)
            return answer

        logger.info("Applied %s to message %d", action, uid)
        await self._chat.answer_callback(query.id, answer)
        if query.chat_id is not None and query.message_id is not None:
            await self._chat.clear_buttons(query.chat_id, query.message_id)
        return answer


class UpdatePoller:
    """Long-polls Telegram for callback queries."""

    def __init__(
        self,
        chat: ChatClient,
        handler: MailActionHandler,
        *,
        poll_timeout: int = UPDATES_LONG_POLL_SECONDS,
        error_delay: float = 1.0,
    ) -> None:
        self._chat = chat
        self._handler = handler
        self._poll_timeout = poll_timeout
        self._error_delay = error_delay
        self._offset: int | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the poller is currently running."""
        return self._running

    def start(self) -> None:
        """Start the background polling task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._poll_loop())

    def stop(self) -> None:
        """Stop the background polling task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def poll_once(self) -> int:
        """Fetch pending updates and handle them. Returns count handled."""
        updates = await self._chat.get_updates(
            offset=self._offset, timeout=self._poll_timeout
        )
        count = 0
        for update in updates:
            self._offset = update.update_id + 1
            if update.callback_query is None:
                continue
            try:
                await self._handler.handle(update.callback_query)
                count += 1
            except DeliveryError:
                logger.warning(
                    "Could not answer callback %s", update.callback_query.id, exc_info=True
                )
        return count

    async def _poll_loop(self) -> None:
        """Background polling loop."""
        while self._running:
            try:
                await self.poll_once()
            except DeliveryError as e:
                logger.warning("Polling Telegram updates failed: %s", e)
                await asyncio.sleep(self._error_delay)
            except Exception:
                logger.exception("Error in update poll loop")
                await asyncio.sleep(self._error_delay)
