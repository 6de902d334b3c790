"""Reconnect supervisor.

Owns the mailbox session lifecycle as an explicit state machine:

    DISCONNECTED -> CONNECTING -> LOCKING -> ACTIVE -> DISCONNECTED ...
                                                    \\-> STOPPED (shutdown)

Every session-ending event (error, server close, iterator failure,
shutdown) runs the same idempotent teardown before anything else happens,
and a new session is only built once the previous one is fully torn down.
Reconnection is unconditional with a fixed delay; a StoreError is the one
failure that ends the run.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from .conventions import (
    BATCH_SIZE,
    DEFAULT_MAILBOX,
    DEFAULT_TRASH_FOLDER,
    NOOP_INTERVAL_MS,
    RECONNECT_DELAY_SECONDS,
)
from .errors import SessionClosed, SessionError, StoreError
from .mail.iterator import CursorFetchIterator
from .mail.session import MailboxLock, MailboxSession
from .pump import DeliveryPump
from .store import CursorStore

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], MailboxSession]


class SupervisorState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    LOCKING = "locking"
    ACTIVE = "active"
    STOPPED = "stopped"


class SessionLifecycle:
    """Handles that live for exactly one session: connection, lock, keep-alive."""

    def __init__(self, session: MailboxSession) -> None:
        self.session: MailboxSession | None = session
        self.lock: MailboxLock | None = None
        self.keepalive_task: asyncio.Task[None] | None = None
        self.trash_folder = DEFAULT_TRASH_FOLDER
        self.closed = False
        self._teardown_lock = asyncio.Lock()

    def start_keepalive(self, interval: float) -> None:
        if self.keepalive_task is None and self.session is not None:
            self.keepalive_task = asyncio.create_task(self._keepalive(self.session, interval))

    @staticmethod
    async def _keepalive(session: MailboxSession, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await session.noop()
            except SessionError as e:
                # The session's terminal signal drives the teardown
                logger.debug("Keep-alive stopped: %s", e)
                return
            except Exception:
                logger.warning("Keep-alive failed, stopping it", exc_info=True)
                return

    async def close(self) -> None:
        """Clear keep-alive, release the lock, close the session. Idempotent."""
        async with self._teardown_lock:
            if self.closed:
                return
            self.closed = True

            task, self.keepalive_task = self.keepalive_task, None
            if task is not None:
                task.cancel()
                try:
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                except Exception:
                    logger.warning("Keep-alive task had failed", exc_info=True)

            lock, self.lock = self.lock, None
            if lock is not None:
                logger.info("Releasing mailbox lock on %s", lock.path)
                lock.release()

            session, self.session = self.session, None
            if session is not None:
                logger.info("Closing mailbox session")
                try:
                    await session.close()
                except Exception:
                    logger.warning("Error closing mailbox session", exc_info=True)


def _terminal_error(session: MailboxSession) -> BaseException | None:
    """The session's terminal signal as an exception, if it has fired."""
    terminated = session.terminated
    if not terminated.done():
        return None
    if terminated.cancelled():
        return SessionClosed("mailbox session cancelled")
    return terminated.exception() or SessionClosed("mailbox session closed")


class ReconnectSupervisor:
    """Runs connect -> lock -> pump, reconnecting after every failure."""

    def __init__(
        self,
        session_factory: SessionFactory,
        store: CursorStore,
        pump: DeliveryPump,
        *,
        mailbox: str = DEFAULT_MAILBOX,
        batch_size: int = BATCH_SIZE,
        keepalive_interval: float = NOOP_INTERVAL_MS / 1000,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        started_at: datetime | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._pump = pump
        self._mailbox = mailbox
        self._batch_size = batch_size
        self._keepalive_interval = keepalive_interval
        self._reconnect_delay = reconnect_delay
        self._started_at = started_at or datetime.now(UTC)
        self._shutdown = asyncio.Event()
        self._lifecycle: SessionLifecycle | None = None
        self.state = SupervisorState.DISCONNECTED
        self.sessions_started = 0

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    @property
    def active_mailbox(self) -> SessionLifecycle | None:
        """The current session's handles while ACTIVE, else None."""
        if self.state is SupervisorState.ACTIVE:
            return self._lifecycle
        return None

    def shutdown(self) -> None:
        """Request a graceful stop. Safe to call from a signal handler."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
            self._shutdown.set()

    def _set_state(self, state: SupervisorState) -> None:
        if state is not self.state:
            logger.info("Supervisor %s -> %s", self.state.value, state.value)
            self.state = state

    async def run(self) -> None:
        """Main loop. Returns after shutdown; raises StoreError."""
        try:
            while not self._shutdown.is_set():
                await self._run_session()
                if self._shutdown.is_set():
                    break
                logger.info(
                    "Main loop disconnected, reconnecting in %.1fs", self._reconnect_delay
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._shutdown.wait(), self._reconnect_delay)
        finally:
            self._set_state(SupervisorState.STOPPED)

    async def _run_session(self) -> None:
        lifecycle = SessionLifecycle(self._session_factory())
        self._lifecycle = lifecycle
        self.sessions_started += 1
        try:
            await self._connect_and_pump(lifecycle)
        except StoreError:
            logger.exception("Cursor store failed, stopping")
            raise
        except SessionError as e:
            logger.warning("Mailbox session ended: %s", e)
        except Exception:
            logger.exception("Error in main loop")
        finally:
            self._set_state(SupervisorState.DISCONNECTED)
            self._lifecycle = None
            await lifecycle.close()

    async def _connect_and_pump(self, lifecycle: SessionLifecycle) -> None:
        session = lifecycle.session
        if session is None:
            raise SessionClosed("session lifecycle already torn down")

        self._set_state(SupervisorState.CONNECTING)
        await session.connect()
        lifecycle.trash_folder = await self._discover_trash(session)

        self._set_state(SupervisorState.LOCKING)
        lifecycle.lock = await session.lock(self._mailbox)
        lifecycle.start_keepalive(self._keepalive_interval)
        self._set_state(SupervisorState.ACTIVE)

        iterator = CursorFetchIterator(
            session,
            self._store,
            batch_size=self._batch_size,
            started_at=self._started_at,
        )
        pump_task = asyncio.create_task(self._pump.run(iterator))
        shutdown_task = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait(
                {pump_task, shutdown_task, session.terminated},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (pump_task, shutdown_task):
                task.cancel()
            await asyncio.gather(pump_task, shutdown_task, return_exceptions=True)

        session_error = _terminal_error(session)
        pump_error = None if pump_task.cancelled() else pump_task.exception()
        if pump_error is not None:
            raise pump_error
        if session_error is not None:
            raise session_error
        if pump_task.done() and not self._shutdown.is_set():
            logger.warning("Message stream ended unexpectedly")

    async def _discover_trash(self, session: MailboxSession) -> str:
        logger.info("Listing mailboxes")
        folder = await session.find_trash_folder()
        if folder is None:
            logger.error("No trash folder found, defaulting to %s", DEFAULT_TRASH_FOLDER)
            return DEFAULT_TRASH_FOLDER
        logger.info("Using trash folder %s", folder)
        return folder
