"""Shared test fixtures for mailbridge tests."""

import asyncio
import contextlib
from email.message import EmailMessage
from pathlib import Path

import pytest

from mailbridge.mail.session import MemoryMailboxSession
from mailbridge.store import CursorStore
from mailbridge.telegram.client import MemoryChatClient


def make_raw(
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "Bob <bob@example.com>",
    body: str = "Hi Bob",
    attachments: list[tuple[str, bytes]] | None = None,
    date: str = "Fri, 04 Apr 2025 19:31:58 +0530",
) -> bytes:
    """Build raw RFC 822 bytes for a test message."""
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = date
    msg.set_content(body)
    for filename, payload in attachments or []:
        msg.add_attachment(
            payload, maintype="application", subtype="octet-stream", filename=filename
        )
    return msg.as_bytes()


@pytest.fixture
def store(tmp_path: Path) -> CursorStore:
    return CursorStore(tmp_path / "kv.json")


@pytest.fixture
def session() -> MemoryMailboxSession:
    return MemoryMailboxSession()


@pytest.fixture
def chat() -> MemoryChatClient:
    return MemoryChatClient()


@pytest.fixture(autouse=True)
async def _cancel_stray_tasks():
    """Cancel any tasks that leaked from a test."""
    yield
    await asyncio.sleep(0)
    current = asyncio.current_task()
    for task in asyncio.all_tasks():
        if task is not current and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(asyncio.shield(task), timeout=0.1)
