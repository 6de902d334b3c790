"""Tests for the delivery pump and fan-out resolution."""

from __future__ import annotations

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, patch

import pytest

from mailbridge.mail.models import FetchedMessage, MailAddress
from mailbridge.pump import DeliveryPump, resolve_fanout
from mailbridge.telegram.client import MemoryChatClient

PRIMARY = -1001


def _message(uid: int = 1, sender: str = "alice@example.com", to=("bob@example.com",)):
    return FetchedMessage(
        uid=uid,
        subject=f"message {uid}",
        from_addrs=[MailAddress(sender, "Alice")],
        to_addrs=[MailAddress(addr) for addr in to],
        text="body",
    )


async def _stream(*messages: FetchedMessage) -> AsyncIterator[FetchedMessage]:
    for message in messages:
        yield message


class TestResolveFanout:
    def test_from_and_to_keys(self) -> None:
        mapping = {"from:alice@example.com": [1], "to:bob@example.com": [2]}
        assert resolve_fanout(_message(), mapping) == [1, 2]

    def test_deduplicates_across_keys(self) -> None:
        mapping = {"from:alice@example.com": [1, 2], "to:bob@example.com": [2, 1, 3]}
        assert resolve_fanout(_message(), mapping) == [1, 2, 3]

    def test_address_match_is_case_insensitive(self) -> None:
        message = _message(sender="Alice@Example.COM")
        assert resolve_fanout(message, {"from:alice@example.com": [5]}) == [5]

    def test_primary_chat_excluded(self) -> None:
        mapping = {"to:bob@example.com": [PRIMARY, 7]}
        assert resolve_fanout(_message(), mapping, exclude=PRIMARY) == [7]

    def test_no_match(self) -> None:
        assert resolve_fanout(_message(), {"from:someone@else.org": [1]}) == []

    def test_every_to_address_considered(self) -> None:
        message = _message(to=("bob@example.com", "carol@example.com"))
        mapping = {"to:carol@example.com": [9]}
        assert resolve_fanout(message, mapping) == [9]


class TestDeliveryPump:
    async def test_primary_delivery_has_action_buttons(
        self, chat: MemoryChatClient
    ) -> None:
        pump = DeliveryPump(chat, PRIMARY, wait_after_message=0)
        await pump.deliver(_message(uid=42))

        [sent] = chat.sent_messages
        assert sent.chat_id == PRIMARY
        assert "<b>Subject:</b> message 42" in sent.text
        assert [b.callback_data for b in sent.buttons] == [
            "mail:read_42",
            "mail:delete_42",
        ]

    async def test_forwarded_copies_have_no_buttons(self, chat: MemoryChatClient) -> None:
        mapping = {"from:alice@example.com": [10, 11], "to:bob@example.com": [11]}
        pump = DeliveryPump(chat, PRIMARY, mapping, wait_after_message=0)
        await pump.deliver(_message())

        assert [m.chat_id for m in chat.sent_messages] == [PRIMARY, 10, 11]
        assert all(m.buttons is None for m in chat.sent_messages[1:])
        assert len({m.text for m in chat.sent_messages}) == 1
        assert pump.stats.forwarded == 2

    async def test_forward_failure_is_isolated(self, chat: MemoryChatClient) -> None:
        chat.fail_for = {10}
        mapping = {"from:alice@example.com": [10, 11]}
        pump = DeliveryPump(chat, PRIMARY, mapping, wait_after_message=0)
        await pump.deliver(_message())

        assert [m.chat_id for m in chat.sent_messages] == [PRIMARY, 11]
        assert pump.stats.forwarded == 1
        assert pump.stats.forwards_failed == 1

    async def test_primary_failure_still_forwards(self, chat: MemoryChatClient) -> None:
        chat.fail_for = {PRIMARY}
        pump = DeliveryPump(
            chat, PRIMARY, {"to:bob@example.com": [3]}, wait_after_message=0
        )
        await pump.deliver(_message())

        assert [m.chat_id for m in chat.sent_messages] == [3]
        assert pump.stats.failed == 1

    async def test_unexpected_forward_error_propagates(
        self, chat: MemoryChatClient
    ) -> None:
        pump = DeliveryPump(chat, PRIMARY, {"to:bob@example.com": [3]}, wait_after_message=0)
        original = chat.send_message

        async def send(chat_id, text, buttons=None):
            if chat_id == 3:
                raise RuntimeError("bug")
            return await original(chat_id, text, buttons)

        chat.send_message = send  # type: ignore[method-assign]
        with pytest.raises(RuntimeError, match="bug"):
            await pump.deliver(_message())

    async def test_run_delivers_in_order_and_pauses(self, chat: MemoryChatClient) -> None:
        pump = DeliveryPump(chat, PRIMARY, wait_after_message=0.25)
        with patch("mailbridge.pump.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await pump.run(_stream(_message(1), _message(2), _message(3)))

        texts = [m.text for m in chat.sent_messages]
        assert all(f"message {uid}" in text for uid, text in zip((1, 2, 3), texts, strict=True))
        assert [call.args[0] for call in sleep.call_args_list] == [0.25, 0.25, 0.25]
        assert pump.stats.delivered == 3
