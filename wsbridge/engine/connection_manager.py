"""
Connection Manager - sole owner of the websocket handle.

Provides:
- Serialized execution: every operation holds one coarse lock end-to-end,
  so no two commands ever touch the handle at the same time
- Disconnected/Connected lifecycle for the single websocket handle
- Translation of networking library failures into BridgeError subclasses
- Traffic statistics for the live connection
"""
from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from wsbridge.config import Settings, settings
from wsbridge.engine.transport import FingerprintSession, OrderedHeaders
from wsbridge.exceptions import (
    ConfigurationError,
    ConnectionError,
    FingerprintError,
    NotConnectedError,
    ReceiveError,
    ReceiveTimeoutError,
    SendError,
    SessionInitializationError,
    TeardownError,
)

logger = structlog.get_logger()


def filter_headers(headers: Optional[Iterable[Any]]) -> OrderedHeaders:
    """
    Keep only well-formed [key, value] string pairs, in their original order.

    Duplicated keys are kept. Anything else is dropped without error.
    """
    ordered: OrderedHeaders = []
    dropped = 0
    for entry in headers or ():
        if (
            isinstance(entry, (list, tuple))
            and len(entry) == 2
            and all(isinstance(part, str) for part in entry)
        ):
            ordered.append((entry[0], entry[1]))
        else:
            dropped += 1

    if dropped:
        logger.debug("malformed_headers_dropped", dropped=dropped, kept=len(ordered))
    return ordered


class ConnectionManager:
    """
    Owns the networking session and at most one websocket handle.

    The handle is only read or replaced while holding ``_lock``. A blocked
    receive keeps the lock, so close() waits for it; pass a receive
    deadline to bound that wait.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any] = FingerprintSession,
        config: Settings = settings,
    ):
        self._config = config
        try:
            self._session = session_factory()
        except Exception as e:
            raise SessionInitializationError(
                f"failed to create session: {e}",
                details={"error_type": type(e).__name__},
            )

        self._handle: Optional[Any] = None
        self._lock: asyncio.Lock = asyncio.Lock()

        # Connection state
        self.url: Optional[str] = None
        self.healthy: bool = False
        self.fingerprint_applied: bool = False

        # Statistics
        self.connected_at: Optional[datetime] = None
        self.last_send: Optional[datetime] = None
        self.last_recv: Optional[datetime] = None
        self.bytes_sent: int = 0
        self.bytes_received: int = 0
        self.send_count: int = 0
        self.recv_count: int = 0

    async def apply_fingerprint(self, fingerprint: Optional[str], profile: Optional[str]) -> None:
        """Shape the handshake of the next connection. Leaves the handle alone."""
        async with self._lock:
            try:
                self._session.apply_fingerprint(fingerprint, profile)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.warning("fingerprint_rejected", browser=profile, error=str(e))
                raise FingerprintError(
                    f"failed to apply JA3: {e}",
                    details={"browser": profile},
                )
            self.fingerprint_applied = True
            logger.info("fingerprint_applied", browser=profile)

    async def connect(self, url: Optional[str], headers: Optional[Iterable[Any]] = None) -> None:
        """
        Open a websocket to ``url`` with the session's current fingerprint.

        A handle that is already open is closed first; connect never
        leaves two live connections behind.
        """
        async with self._lock:
            if not url:
                raise ConnectionError("failed to connect: missing url")

            ordered_headers = filter_headers(headers)

            if self._handle is not None:
                await self._discard_handle(reason="reconnect")

            try:
                handle = await self._session.open_connection(
                    url,
                    self._config.read_buffer_size,
                    self._config.write_buffer_size,
                    ordered_headers,
                    timeout=self._config.connect_timeout_sec,
                )
            except Exception as e:
                logger.error("websocket_connect_failed", url=url, error=str(e))
                raise ConnectionError(
                    f"failed to connect: {e}",
                    details={"url": url, "error_type": type(e).__name__},
                )

            self._handle = handle
            self._reset_stats(url)
            logger.info("websocket_connected", url=url, header_count=len(ordered_headers))

    async def send(self, message: Any) -> None:
        """Encode ``message`` as JSON and write it as one text frame."""
        async with self._lock:
            handle = self._require_handle()
            try:
                payload = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
            except (TypeError, ValueError) as e:
                raise SendError(f"failed to send message: {e}")

            try:
                await handle.write_message(payload)
            except Exception as e:
                self.healthy = False
                logger.error("websocket_send_failed", url=self.url, error=str(e))
                raise SendError(
                    f"failed to send message: {e}",
                    details={"url": self.url, "data_size": len(payload)},
                )

            self.last_send = datetime.utcnow()
            self.bytes_sent += len(payload.encode("utf-8"))
            self.send_count += 1

    async def receive(self, timeout_ms: Optional[int] = None) -> str:
        """
        Wait for the next inbound message and return it as text.

        Args:
            timeout_ms: Deadline in milliseconds; falls back to
                settings.receive_timeout_ms. None or 0 waits forever.

        Raises:
            NotConnectedError: no live handle
            ReceiveTimeoutError: deadline expired
            ReceiveError: transport failure
        """
        async with self._lock:
            handle = self._require_handle()
            if timeout_ms is None:
                timeout_ms = self._config.receive_timeout_ms
            timeout = timeout_ms / 1000 if timeout_ms else None

            try:
                data = await asyncio.wait_for(handle.read_message(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("websocket_receive_timeout", url=self.url, timeout_ms=timeout_ms)
                raise ReceiveTimeoutError(
                    f"failed to read message: no message within {timeout_ms} ms",
                    details={"timeout_ms": timeout_ms},
                )
            except Exception as e:
                self.healthy = False
                logger.error("websocket_receive_failed", url=self.url, error=str(e))
                raise ReceiveError(
                    f"failed to read message: {e}",
                    details={"url": self.url, "error_type": type(e).__name__},
                )

            if isinstance(data, str):
                data = data.encode("utf-8")
            self.last_recv = datetime.utcnow()
            self.bytes_received += len(data)
            self.recv_count += 1
            return data.decode("utf-8", errors="replace")

    async def close(self) -> None:
        """
        Close the websocket (if any) and release the session.

        The handle reference is cleared even when teardown fails; the
        failure is then reported as TeardownError.
        """
        async with self._lock:
            failures = []
            handle, self._handle = self._handle, None

            if handle is not None:
                try:
                    await handle.close()
                except Exception as e:
                    failures.append(f"websocket: {e}")

            try:
                await self._session.close()
            except Exception as e:
                failures.append(f"session: {e}")

            self.healthy = False
            logger.info("websocket_closed", had_connection=handle is not None, **self._stats())

            if failures:
                logger.error("teardown_failed", errors=failures)
                raise TeardownError(
                    "failed to close: " + "; ".join(failures),
                    details={"errors": failures},
                )

    async def get_stats(self) -> Dict[str, Any]:
        """Snapshot of connection state and traffic counters."""
        async with self._lock:
            return self._stats()

    def _stats(self) -> Dict[str, Any]:
        """Caller must hold the lock."""
        return {
            "connected": self._handle is not None,
            "healthy": self.healthy,
            "url": self.url,
            "fingerprint_applied": self.fingerprint_applied,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_send": self.last_send.isoformat() if self.last_send else None,
            "last_recv": self.last_recv.isoformat() if self.last_recv else None,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "send_count": self.send_count,
            "recv_count": self.recv_count,
        }

    def _require_handle(self) -> Any:
        """Caller must hold the lock."""
        if self._handle is None:
            raise NotConnectedError()
        return self._handle

    async def _discard_handle(self, reason: str) -> None:
        """Close and drop the current handle. Caller must hold the lock."""
        handle, self._handle = self._handle, None
        try:
            await handle.close()
        except Exception as e:
            logger.warning("websocket_discard_close_error", url=self.url, reason=reason, error=str(e))
        logger.info("websocket_discarded", url=self.url, reason=reason)

    def _reset_stats(self, url: str) -> None:
        self.url = url
        self.healthy = True
        self.connected_at = datetime.utcnow()
        self.last_send = None
        self.last_recv = None
        self.bytes_sent = 0
        self.bytes_received = 0
        self.send_count = 0
        self.recv_count = 0
