"""End-to-end tests for bridge assembly with in-memory collaborators."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from conftest import make_raw
from mailbridge.bridge import MailBridge, initialize
from mailbridge.errors import StoreError
from mailbridge.mail.session import MemoryMailboxSession, StoredMessage
from mailbridge.schema import BridgeConfig
from mailbridge.store import CursorStore
from mailbridge.telegram.client import (
    CallbackQuery,
    HttpTelegramClient,
    MemoryChatClient,
    Update,
)

PRIMARY = -1001
OPS_CHAT = 7
LONG_AGO = datetime(2000, 1, 1, tzinfo=UTC)


@pytest.fixture
def config(tmp_path: Path) -> BridgeConfig:
    return BridgeConfig(
        bot_token="123:abc",
        imap_url="imaps://me:pw@mail.example.com/INBOX",
        bridged_chat_id=PRIMARY,
        store=str(tmp_path / "kv.json"),
        mapping={"to:ops@example.com": [OPS_CHAT]},
        wait_after_message_ms=0,
        reconnect_delay_seconds=0.01,
    )


@pytest.fixture
def mailbox() -> MemoryMailboxSession:
    return MemoryMailboxSession(
        [
            StoredMessage(uid=1, raw=make_raw(subject="Deploy", to="ops@example.com")),
            StoredMessage(uid=2, raw=make_raw(subject="Lunch")),
        ]
    )


def _bridge(
    config: BridgeConfig,
    mailbox: MemoryMailboxSession,
    chat: MemoryChatClient,
    store: CursorStore,
    **kwargs,
) -> MailBridge:
    return initialize(
        config,
        session_factory=lambda: mailbox,
        chat=chat,
        store=store,
        started_at=LONG_AGO,
        **kwargs,
    )


async def _wait_for(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition never became true")


class TestRun:
    async def test_delivers_fans_out_and_shuts_down(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        bridge = _bridge(config, mailbox, chat, store)
        task = asyncio.create_task(bridge.run())

        await _wait_for(lambda: len(chat.messages_for(PRIMARY)) == 2)
        bridge.shutdown()
        await asyncio.wait_for(task, timeout=1)

        subjects = [m.text for m in chat.messages_for(PRIMARY)]
        assert "Deploy" in subjects[0]
        assert "Lunch" in subjects[1]
        assert len(chat.messages_for(OPS_CHAT)) == 1
        assert json.loads(store.path.read_text()) == {"lastSeenUid": 2}
        assert mailbox.closed
        assert chat.closed
        assert not bridge.poller.is_running

    async def test_new_mail_while_running(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        bridge = _bridge(config, mailbox, chat, store)
        task = asyncio.create_task(bridge.run())
        await _wait_for(lambda: len(chat.messages_for(PRIMARY)) == 2)

        mailbox.deliver(3, make_raw(subject="Late arrival"))

        await _wait_for(lambda: len(chat.messages_for(PRIMARY)) == 3)
        bridge.shutdown()
        await asyncio.wait_for(task, timeout=1)
        assert "Late arrival" in chat.messages_for(PRIMARY)[-1].text

    async def test_resumes_from_stored_watermark(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        store.write(1)
        bridge = _bridge(config, mailbox, chat, store)
        task = asyncio.create_task(bridge.run())

        await _wait_for(lambda: len(chat.messages_for(PRIMARY)) == 1)
        bridge.shutdown()
        await asyncio.wait_for(task, timeout=1)

        assert "Lunch" in chat.messages_for(PRIMARY)[0].text
        assert chat.messages_for(OPS_CHAT) == []


class TestActionsWiring:
    async def test_button_press_reaches_active_session(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        bridge = _bridge(config, mailbox, chat, store)
        task = asyncio.create_task(bridge.supervisor.run())
        await _wait_for(lambda: bridge.supervisor.active_mailbox is not None)

        chat.pending_updates = [
            Update(
                update_id=1,
                callback_query=CallbackQuery(
                    id="q1", data="mail:read_2", chat_id=PRIMARY, message_id=2
                ),
            )
        ]
        assert await bridge.poller.poll_once() == 1

        assert mailbox.messages[2].seen
        assert chat.answered == [("q1", "Marked as read")]

        bridge.shutdown()
        await asyncio.wait_for(task, timeout=1)
        await bridge.close()

    async def test_without_actions(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        bridge = _bridge(config, mailbox, chat, store, with_actions=False)
        assert bridge.poller is None
        await bridge.close()


class TestClose:
    async def test_close_is_idempotent(
        self,
        config: BridgeConfig,
        mailbox: MemoryMailboxSession,
        chat: MemoryChatClient,
        store: CursorStore,
    ) -> None:
        bridge = _bridge(config, mailbox, chat, store)
        bridge.poller.start()

        await bridge.close()
        await bridge.close()

        assert chat.closed
        assert not bridge.poller.is_running
        with pytest.raises(StoreError):
            store.read()

    async def test_default_collaborators(self, config: BridgeConfig) -> None:
        bridge = initialize(config)
        try:
            assert isinstance(bridge.chat, HttpTelegramClient)
            assert bridge.store.path == Path(config.store)
        finally:
            await bridge.close()
