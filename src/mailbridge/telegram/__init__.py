"""Telegram side of the bridge: Bot API client and inline actions."""

from .actions import MailActionHandler, UpdatePoller, mail_buttons
from .client import (
    CallbackQuery,
    ChatClient,
    HttpTelegramClient,
    InlineButton,
    MemoryChatClient,
    Update,
)

__all__ = [
    "CallbackQuery",
    "ChatClient",
    "HttpTelegramClient",
    "InlineButton",
    "MailActionHandler",
    "MemoryChatClient",
    "Update",
    "UpdatePoller",
    "mail_buttons",
]
