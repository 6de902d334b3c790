"""Tests for inline mailbox actions and the update poller."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest

from mailbridge.errors import DeliveryError
from mailbridge.mail.session import MemoryMailboxSession, StoredMessage
from mailbridge.telegram.actions import (
    NOT_CONNECTED_TEXT,
    MailActionHandler,
    UpdatePoller,
    mail_buttons,
    parse_callback,
)
from mailbridge.telegram.client import CallbackQuery, MemoryChatClient, Update


@dataclass
class Active:
    session: MemoryMailboxSession | None
    trash_folder: str = "Trash"


def _query(data: str, query_id: str = "q1") -> CallbackQuery:
    return CallbackQuery(id=query_id, data=data, chat_id=-100, message_id=55)


@pytest.fixture
def mailbox() -> Active:
    return Active(MemoryMailboxSession([StoredMessage(uid=3, raw=b"x")]))


@pytest.fixture
def handler(chat: MemoryChatClient, mailbox: Active) -> MailActionHandler:
    return MailActionHandler(chat, lambda: mailbox)


class TestCallbackData:
    def test_buttons(self) -> None:
        assert [(b.text, b.callback_data) for b in mail_buttons(3)] == [
            ("Read", "mail:read_3"),
            ("Delete", "mail:delete_3"),
        ]

    @pytest.mark.parametrize(
        ("data", "expected"),
        [
            ("mail:read_3", ("read", 3)),
            ("mail:delete_12", ("delete", 12)),
            ("mail:read_", None),
            ("mail:read_x", None),
            ("other", None),
        ],
    )
    def test_parse_callback(self, data: str, expected) -> None:
        assert parse_callback(data) == expected


class TestMailActionHandler:
    async def test_mark_read(
        self, handler: MailActionHandler, chat: MemoryChatClient, mailbox: Active
    ) -> None:
        assert await handler.handle(_query("mail:read_3")) == "Marked as read"
        assert mailbox.session.messages[3].seen
        assert chat.answered == [("q1", "Marked as read")]
        assert chat.cleared == [(-100, 55)]

    async def test_delete_moves_to_trash(
        self, handler: MailActionHandler, chat: MemoryChatClient, mailbox: Active
    ) -> None:
        mailbox.trash_folder = "Deleted Items"
        assert await handler.handle(_query("mail:delete_3")) == "Deleted message"
        assert mailbox.session.messages[3].folder == "Deleted Items"
        assert chat.cleared == [(-100, 55)]

    async def test_no_active_session(self, chat: MemoryChatClient) -> None:
        handler = MailActionHandler(chat, lambda: None)
        assert await handler.handle(_query("mail:read_3")) == NOT_CONNECTED_TEXT
        assert chat.answered == [("q1", "IMAP connection not established")]
        assert chat.cleared == []

    async def test_action_failure_is_reported(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        answer = await handler.handle(_query("mail:read_99"))
        assert answer is not None and answer.startswith("Failed")
        assert chat.answered[0][1] == answer
        assert chat.cleared == []

    async def test_dead_session_is_reported(
        self, handler: MailActionHandler, chat: MemoryChatClient, mailbox: Active
    ) -> None:
        mailbox.session.drop(OSError("reset"))
        answer = await handler.handle(_query("mail:delete_3"))
        assert answer is not None and "reset" in answer
        assert chat.cleared == []

    async def test_unknown_callback_ignored(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        assert await handler.handle(_query("something:else")) is None
        assert chat.answered == []


class TestUpdatePoller:
    async def test_poll_once_handles_callbacks_and_advances_offset(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        chat.pending_updates = [
            Update(update_id=10, callback_query=_query("mail:read_3", "a")),
            Update(update_id=11),
            Update(update_id=12, callback_query=_query("mail:delete_3", "b")),
        ]
        poller = UpdatePoller(chat, handler, poll_timeout=0)

        assert await poller.poll_once() == 2
        assert [q for q, _ in chat.answered] == ["a", "b"]
        assert poller._offset == 13

    async def test_answer_failure_does_not_stop_batch(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        calls: list[str] = []

        async def flaky_answer(callback_id: str, text: str) -> None:
            calls.append(callback_id)
            if callback_id == "a":
                raise DeliveryError("query is too old")

        chat.answer_callback = flaky_answer  # type: ignore[method-assign]
        chat.pending_updates = [
            Update(update_id=1, callback_query=_query("mail:read_3", "a")),
            Update(update_id=2, callback_query=_query("mail:read_3", "b")),
        ]
        poller = UpdatePoller(chat, handler, poll_timeout=0)

        assert await poller.poll_once() == 1
        assert calls == ["a", "b"]

    async def test_start_and_stop(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        chat.pending_updates = [Update(update_id=1, callback_query=_query("mail:read_3"))]
        poller = UpdatePoller(chat, handler, poll_timeout=0)

        poller.start()
        poller.start()
        assert poller.is_running
        for _ in range(20):
            if chat.answered:
                break
            await asyncio.sleep(0.01)
        poller.stop()

        assert not poller.is_running
        assert chat.answered == [("q1", "Marked as read")]

    async def test_poll_loop_survives_errors(
        self, handler: MailActionHandler, chat: MemoryChatClient
    ) -> None:
        attempts = 0

        async def failing_updates(offset=None, timeout=0):
            nonlocal attempts
            attempts += 1
            raise DeliveryError("502 Bad Gateway")

        chat.get_updates = failing_updates  # type: ignore[method-assign]
        poller = UpdatePoller(chat, handler, poll_timeout=0, error_delay=0.005)
        poller.start()
        await asyncio.sleep(0.05)
        poller.stop()
        assert attempts >= 2
