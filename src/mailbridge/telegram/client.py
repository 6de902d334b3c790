"""Telegram Bot API client abstraction.

Provides a Protocol for the chat operations the bridge needs and two
implementations:
- MemoryChatClient: In-memory, no network calls (testing)
- HttpTelegramClient: Real Bot API calls over httpx (production)

The pump and the action handler always work through the ChatClient
protocol, so neither needs a real bot to be tested.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from ..conventions import TELEGRAM_API_BASE, UPDATES_LONG_POLL_SECONDS
from ..errors import DeliveryError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InlineButton:
    """One inline keyboard button carrying callback data."""

    text: str
    callback_data: str


@dataclass(frozen=True)
class CallbackQuery:
    """A button press reported by getUpdates."""

    id: str
    data: str
    chat_id: int | None = None
    message_id: int | None = None


@dataclass(frozen=True)
class Update:
    update_id: int
    callback_query: CallbackQuery | None = None


def _reply_markup(buttons: list[InlineButton]) -> dict[str, Any]:
    return {
        "inline_keyboard": [
            [{"text": b.text, "callback_data": b.callback_data} for b in buttons]
        ]
    }


def parse_update(raw: dict[str, Any]) -> Update:
    """Build an Update from a getUpdates result entry."""
    query = raw.get("callback_query")
    callback = None
    if query:
        message = query.get("message") or {}
        chat = message.get("chat") or {}
        callback = CallbackQuery(
            id=str(query["id"]),
            data=query.get("data") or "",
            chat_id=chat.get("id"),
            message_id=message.get("message_id"),
        )
    return Update(update_id=int(raw["update_id"]), callback_query=callback)


@runtime_checkable
class ChatClient(Protocol):
    """Protocol for Telegram operations."""

    async def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: list[InlineButton] | None = None,
    ) -> int:
        """Send an HTML message. Returns the message id."""
        ...

    async def answer_callback(self, callback_id: str, text: str) -> None:
        """Acknowledge a button press with a short toast."""
        ...

    async def clear_buttons(self, chat_id: int, message_id: int) -> None:
        """Remove the inline keyboard from a sent message."""
        ...

    async def get_updates(
        self, offset: int | None = None, timeout: int = UPDATES_LONG_POLL_SECONDS
    ) -> list[Update]:
        """Long-poll for updates newer than *offset*."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...


@dataclass
class SentMessage:
    """Record of a message sent through the client (for testing)."""

    chat_id: int
    text: str
    buttons: list[InlineButton] | None
    message_id: int


@dataclass
class MemoryChatClient:
    """In-memory chat client for testing.

    Records all operations for inspection. No network calls.
    Implements ChatClient protocol.
    """

    sent_messages: list[SentMessage] = field(default_factory=list)
    answered: list[tuple[str, str]] = field(default_factory=list)
    cleared: list[tuple[int, int]] = field(default_factory=list)
    # Chat ids whose sends raise DeliveryError
    fail_for: set[int] = field(default_factory=set)
    pending_updates: list[Update] = field(default_factory=list)
    closed: bool = False
    _message_counter: int = 0

    async def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: list[InlineButton] | None = None,
    ) -> int:
        if chat_id in self.fail_for:
            raise DeliveryError(f"chat {chat_id} rejected the message")
        self._message_counter += 1
        self.sent_messages.append(
            SentMessage(
                chat_id=chat_id,
                text=text,
                buttons=buttons,
                message_id=self._message_counter,
            )
        )
        return self._message_counter

    async def answer_callback(self, callback_id: str, text: str) -> None:
        self.answered.append((callback_id, text))

    async def clear_buttons(self, chat_id: int, message_id: int) -> None:
        self.cleared.append((chat_id, message_id))

    async def get_updates(
        self, offset: int | None = None, timeout: int = UPDATES_LONG_POLL_SECONDS
    ) -> list[Update]:
        updates = [
            u for u in self.pending_updates if offset is None or u.update_id >= offset
        ]
        self.pending_updates = []
        if not updates:
            # Behave like a long poll that timed out
            await asyncio.sleep(timeout)
        return updates

    async def close(self) -> None:
        self.closed = True

    def messages_for(self, chat_id: int) -> list[SentMessage]:
        return [m for m in self.sent_messages if m.chat_id == chat_id]


class HttpTelegramClient:
    """Telegram Bot API client over httpx.

    One AsyncClient is kept for the life of the bridge; call close() at
    shutdown.
    """

    def __init__(
        self,
        bot_token: str,
        *,
        base_url: str = TELEGRAM_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = f"{base_url.rstrip('/')}/bot{bot_token}"
        # Long polls hold the request open for UPDATES_LONG_POLL_SECONDS
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(UPDATES_LONG_POLL_SECONDS + 10),
            transport=transport,
        )

    async def _api_call(self, method: str, **kwargs: Any) -> Any:
        """Make a Bot API call and return its ``result``."""
        try:
            response = await self._client.post(f"{self._base_url}/{method}", json=kwargs)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DeliveryError(f"Telegram {method} failed: {e}") from e
        if not data.get("ok"):
            raise DeliveryError(
                f"Telegram API error in {method}: {data.get('description', 'unknown')}"
            )
        return data.get("result")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        buttons: list[InlineButton] | None = None,
    ) -> int:
        kwargs: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if buttons:
            kwargs["reply_markup"] = _reply_markup(buttons)
        result = await self._api_call("sendMessage", **kwargs)
        try:
            return int(result["message_id"])
        except (TypeError, KeyError, ValueError) as e:
            raise DeliveryError(
                f"Telegram sendMessage returned no message id: {result!r}"
            ) from e

    async def answer_callback(self, callback_id: str, text: str) -> None:
        await self._api_call("answerCallbackQuery", callback_query_id=callback_id, text=text)

    async def clear_buttons(self, chat_id: int, message_id: int) -> None:
        await self._api_call(
            "editMessageReplyMarkup",
            chat_id=chat_id,
            message_id=message_id,
            reply_markup={"inline_keyboard": []},
        )

    async def get_updates(
        self, offset: int | None = None, timeout: int = UPDATES_LONG_POLL_SECONDS
    ) -> list[Update]:
        kwargs: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": ["callback_query"],
        }
        if offset is not None:
            kwargs["offset"] = offset
        result = await self._api_call("getUpdates", **kwargs)
        return [parse_update(raw) for raw in result or []]

    async def close(self) -> None:
        await self._client.aclose()
