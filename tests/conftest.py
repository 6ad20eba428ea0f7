"""
Shared fixtures and in-memory stand-ins for the networking session.
"""
import asyncio
from typing import List, Optional

import pytest

from wsbridge.config import Settings
from wsbridge.engine.connection_manager import ConnectionManager


class FakeHandle:
    """Fake websocket handle."""

    def __init__(self, messages: Optional[list] = None):
        self.messages = list(messages or [])
        self.written: List[str] = []
        self.closed = False
        self.fail_write = False
        self.fail_read = False
        self.fail_close = False
        self.release = asyncio.Event()
        self.gate_reads = False

    async def write_message(self, payload: str) -> None:
        if self.fail_write:
            raise OSError("broken pipe")
        self.written.append(payload)

    async def read_message(self) -> bytes:
        if self.fail_read:
            raise OSError("connection reset by peer")
        if self.gate_reads:
            await self.release.wait()
        if not self.messages:
            # Nothing queued: block like a quiet websocket
            await asyncio.Event().wait()
        return self.messages.pop(0)

    async def close(self) -> None:
        self.closed = True
        if self.fail_close:
            raise OSError("close frame rejected")


class FakeSession:
    """Fake fingerprint session recording every call."""

    def __init__(self):
        self.handles: List[FakeHandle] = []
        self.open_calls: List[dict] = []
        self.fingerprints: List[tuple] = []
        self.close_count = 0
        self.connect_error: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.reject_fingerprint = False
        self.inbound: list = []

    def apply_fingerprint(self, ja3, browser) -> None:
        if self.reject_fingerprint:
            raise ValueError(f"unknown browser '{browser}'")
        self.fingerprints.append((ja3, browser))

    async def open_connection(self, url, read_buffer_size, write_buffer_size, headers, timeout=None):
        self.open_calls.append(
            {
                "url": url,
                "read_buffer_size": read_buffer_size,
                "write_buffer_size": write_buffer_size,
                "headers": list(headers),
                "timeout": timeout,
            }
        )
        if self.connect_error is not None:
            raise self.connect_error
        handle = FakeHandle(self.inbound)
        self.handles.append(handle)
        return handle

    async def close(self) -> None:
        self.close_count += 1
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture
def config():
    return Settings(receive_timeout_ms=None, read_buffer_size=1024, write_buffer_size=1024)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def manager(fake_session, config):
    return ConnectionManager(session_factory=lambda: fake_session, config=config)
