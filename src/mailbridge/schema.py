"""Pydantic schema for the bridge configuration file.

Default values here MUST match the canonical constants in conventions.py.
conventions.py is the source of truth for fixed names and tunables; this
schema defines the shape of config.yaml.
"""

from __future__ import annotations

import logging
from urllib.parse import unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .conventions import (
    BATCH_SIZE,
    CONNECT_TIMEOUT_SECONDS,
    DEFAULT_MAILBOX,
    DEFAULT_STORE_FILENAME,
    IDLE_TIMEOUT_SECONDS,
    IMAP_PORT,
    IMAPS_PORT,
    NOOP_INTERVAL_MS,
    RECONNECT_DELAY_SECONDS,
    WAIT_AFTER_MESSAGE_MS,
)

_MAPPING_PREFIXES = ("from:", "to:")


class ImapSettings(BaseModel):
    """Connection parameters derived from ``imap_url``."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    secure: bool
    user: str
    password: str = Field(repr=False)
    mailbox: str = DEFAULT_MAILBOX
    timeout: float = CONNECT_TIMEOUT_SECONDS
    idle_timeout: float = IDLE_TIMEOUT_SECONDS


def parse_imap_url(url: str) -> tuple[str, int, bool, str, str, str]:
    """Split ``imap[s]://user:pass@host[:port]/Mailbox``.

    Returns (host, port, secure, user, password, mailbox). Raises
    ValueError on anything else.
    """
    parts = urlsplit(url)
    if parts.scheme not in ("imap", "imaps"):
        raise ValueError(f"imap_url must use imap:// or imaps://, got {parts.scheme!r}")
    if not parts.hostname:
        raise ValueError("imap_url has no host")
    secure = parts.scheme == "imaps"
    port = parts.port or (IMAPS_PORT if secure else IMAP_PORT)
    mailbox = unquote(parts.path.lstrip("/")) or DEFAULT_MAILBOX
    return (
        parts.hostname,
        port,
        secure,
        unquote(parts.username or ""),
        unquote(parts.password or ""),
        mailbox,
    )


class BridgeConfig(BaseModel):
    bot_token: str = Field(min_length=1, repr=False)
    imap_url: str = Field(repr=False)
    store: str = DEFAULT_STORE_FILENAME
    bridged_chat_id: int
    # "from:<address>" / "to:<address>" -> chat ids
    mapping: dict[str, list[int]] = Field(default_factory=dict)
    batch_size: int = Field(default=BATCH_SIZE, ge=1)
    wait_after_message_ms: int = Field(default=WAIT_AFTER_MESSAGE_MS, ge=0)
    noop_interval_ms: int = Field(default=NOOP_INTERVAL_MS, gt=0)
    reconnect_delay_seconds: float = Field(default=RECONNECT_DELAY_SECONDS, ge=0)
    idle_timeout_seconds: float = Field(default=IDLE_TIMEOUT_SECONDS, gt=0)
    connect_timeout_seconds: float = Field(default=CONNECT_TIMEOUT_SECONDS, gt=0)
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("bridged_chat_id", mode="before")
    @classmethod
    def _chat_id_from_string(cls, value: object) -> object:
        if isinstance(value, bool):
            raise ValueError("bridged_chat_id must be a chat id, not a boolean")
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("imap_url")
    @classmethod
    def _check_imap_url(cls, value: str) -> str:
        parse_imap_url(value)
        return value

    @field_validator("mapping")
    @classmethod
    def _normalize_mapping(cls, value: dict[str, list[int]]) -> dict[str, list[int]]:
        normalized: dict[str, list[int]] = {}
        for key, chat_ids in value.items():
            prefix = next((p for p in _MAPPING_PREFIXES if key.startswith(p)), None)
            if prefix is None:
                raise ValueError(f"mapping key {key!r} must start with 'from:' or 'to:'")
            address = key[len(prefix) :].strip().lower()
            if not address:
                raise ValueError(f"mapping key {key!r} has no address")
            merged = normalized.setdefault(prefix + address, [])
            merged.extend(c for c in chat_ids if c not in merged)
        return normalized

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    def imap_settings(self) -> ImapSettings:
        host, port, secure, user, password, mailbox = parse_imap_url(self.imap_url)
        return ImapSettings(
            host=host,
            port=port,
            secure=secure,
            user=user,
            password=password,
            mailbox=mailbox,
            timeout=self.connect_timeout_seconds,
            idle_timeout=self.idle_timeout_seconds,
        )
