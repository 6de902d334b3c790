"""Error taxonomy for the bridge.

Only ``SessionError`` subclasses cross into the reconnect supervisor; the
others are absorbed where they occur, except ``StoreError`` which ends the
run and ``ConfigError`` which fails before the pipeline starts.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all mailbridge errors."""


class ConfigError(BridgeError):
    """Missing or invalid configuration."""


class SessionError(BridgeError):
    """The mailbox session is unusable and must be rebuilt."""


class MailboxConnectionError(SessionError):
    """Transport or authentication failure talking to the mail server."""


class LockError(SessionError):
    """The mailbox could not be selected or locked."""


class SessionClosed(SessionError):
    """The mailbox session closed without reporting an error."""


class SearchError(BridgeError):
    """A mailbox search failed; the cycle is skipped."""


class FetchError(BridgeError):
    """A single message could not be fetched; the UID is skipped."""

    def __init__(self, uid: int, reason: str) -> None:
        super().__init__(f"fetch of UID {uid} failed: {reason}")
        self.uid = uid


class DeliveryError(BridgeError):
    """A chat destination rejected or failed to receive a message."""


class ActionError(BridgeError):
    """An inline mailbox action (mark read, move to trash) failed."""


class StoreError(BridgeError):
    """The cursor store cannot be read or written durably."""
