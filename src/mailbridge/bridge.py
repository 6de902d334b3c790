"""Bridge assembly.

Wires config, cursor store, chat client, delivery pump, reconnect
supervisor and the inline-action poller into one object the CLI runs:

    ImapMailboxSession -> CursorFetchIterator -> DeliveryPump -> Telegram
            ^                                                      |
            +------------ MailActionHandler <- UpdatePoller <------+
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

from .mail.imap import ImapMailboxSession
from .pump import DeliveryPump
from .schema import BridgeConfig
from .store import CursorStore
from .supervisor import ReconnectSupervisor, SessionFactory
from .telegram.actions import MailActionHandler, UpdatePoller
from .telegram.client import ChatClient, HttpTelegramClient

logger = logging.getLogger(__name__)


class MailBridge:
    """A running bridge instance. Build with initialize()."""

    def __init__(
        self,
        supervisor: ReconnectSupervisor,
        store: CursorStore,
        chat: ChatClient,
        poller: UpdatePoller | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.store = store
        self.chat = chat
        self.poller = poller
        self._closed = False

    async def run(self) -> None:
        """Run until shutdown() is called, then release everything."""
        logger.info("Starting mail listener")
        if self.poller is not None:
            self.poller.start()
        try:
            await self.supervisor.run()
        finally:
            await self.close()

    def shutdown(self) -> None:
        self.supervisor.shutdown()

    async def close(self) -> None:
        """Stop the poller, close the store and the chat client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.info("Exiting...")
        if self.poller is not None:
            self.poller.stop()
        self.store.close()
        await self.chat.close()


def initialize(
    config: BridgeConfig,
    *,
    session_factory: SessionFactory | None = None,
    chat: ChatClient | None = None,
    store: CursorStore | None = None,
    started_at: datetime | None = None,
    with_actions: bool = True,
) -> MailBridge:
    """Build a MailBridge from config. Collaborators may be injected."""
    settings = config.imap_settings()

    logger.info("Opening store %s", config.store)
    store = store or CursorStore(Path(config.store))

    logger.info("Initialising Telegram bot")
    chat = chat or HttpTelegramClient(config.bot_token)

    if session_factory is None:

        def session_factory() -> ImapMailboxSession:
            return ImapMailboxSession(settings)

    pump = DeliveryPump(
        chat,
        config.bridged_chat_id,
        config.mapping,
        wait_after_message=config.wait_after_message_ms / 1000,
    )
    supervisor = ReconnectSupervisor(
        session_factory,
        store,
        pump,
        mailbox=settings.mailbox,
        batch_size=config.batch_size,
        keepalive_interval=config.noop_interval_ms / 1000,
        reconnect_delay=config.reconnect_delay_seconds,
        started_at=started_at or datetime.now(UTC),
    )
    poller = None
    if with_actions:
        poller = UpdatePoller(chat, MailActionHandler(chat, lambda: supervisor.active_mailbox))
    return MailBridge(supervisor, store, chat, poller)
