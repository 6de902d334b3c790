"""Delivery pump.

Drains the fetch iterator: render each message, send it to the primary
chat with inline action buttons, forward copies to every chat the fan-out
mapping selects, then pause before pulling the next message.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass

from .conventions import WAIT_AFTER_MESSAGE_MS
from .errors import DeliveryError
from .mail.formatting import format_mail
from .mail.models import FetchedMessage
from .telegram.actions import mail_buttons
from .telegram.client import ChatClient

logger = logging.getLogger(__name__)


def resolve_fanout(
    message: FetchedMessage,
    mapping: Mapping[str, Sequence[int]],
    exclude: int | None = None,
) -> list[int]:
    """Chat ids selected by ``from:``/``to:`` keys, deduplicated in order.

    Addresses compare case-insensitively; mapping keys are expected to be
    lower-cased already.
    """
    keys = [f"from:{a.address.lower()}" for a in message.from_addrs]
    keys += [f"to:{a.address.lower()}" for a in message.to_addrs]
    seen: set[int] = set()
    recipients: list[int] = []
    for key in keys:
        for chat_id in mapping.get(key, ()):
            if chat_id == exclude or chat_id in seen:
                continue
            seen.add(chat_id)
            recipients.append(chat_id)
    return recipients


@dataclass
class PumpStats:
    delivered: int = 0
    failed: int = 0
    forwarded: int = 0
    forwards_failed: int = 0


class DeliveryPump:
    """Pushes fetched messages to Telegram."""

    def __init__(
        self,
        chat: ChatClient,
        primary_chat_id: int,
        mapping: Mapping[str, Sequence[int]] | None = None,
        *,
        wait_after_message: float = WAIT_AFTER_MESSAGE_MS / 1000,
    ) -> None:
        self._chat = chat
        self._primary_chat_id = primary_chat_id
        self._mapping = mapping or {}
        self._wait_after_message = wait_after_message
        self.stats = PumpStats()

    async def run(self, messages: AsyncIterator[FetchedMessage]) -> None:
        """Deliver messages until the iterator raises or is exhausted."""
        async for message in messages:
            await self.deliver(message)
            # Backpressure toward Telegram rate limits
            await asyncio.sleep(self._wait_after_message)

    async def deliver(self, message: FetchedMessage) -> None:
        logger.info("Found new message %d, sending to Telegram", message.uid)
        formatted = format_mail(message)

        try:
            await self._chat.send_message(
                self._primary_chat_id, formatted, buttons=mail_buttons(message.uid)
            )
        except DeliveryError as e:
            self.stats.failed += 1
            logger.warning("Could not deliver message %d: %s", message.uid, e)
        else:
            self.stats.delivered += 1
            logger.info("Sent message %d to Telegram", message.uid)

        recipients = resolve_fanout(message, self._mapping, exclude=self._primary_chat_id)
        if recipients:
            await self._forward(message.uid, formatted, recipients)

    async def _forward(self, uid: int, formatted: str, recipients: list[int]) -> None:
        results = await asyncio.gather(
            *(self._chat.send_message(chat_id, formatted) for chat_id in recipients),
            return_exceptions=True,
        )
        succeeded = 0
        for chat_id, result in zip(recipients, results, strict=True):
            if isinstance(result, DeliveryError):
                logger.warning("Forward of message %d to %d failed: %s", uid, chat_id, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                succeeded += 1
        failed = len(recipients) - succeeded
        self.stats.forwarded += succeeded
        self.stats.forwards_failed += failed
        if succeeded:
            logger.info("Additionally forwarded message %d to %d recipients", uid, succeeded)
        if failed:
            logger.warning("%d forwards of message %d failed", failed, uid)
