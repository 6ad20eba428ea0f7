"""
Transport Layer - fingerprinted websocket session over curl_cffi.

The connection manager talks to the network only through the two classes
here:
- FingerprintSession: long-lived session holding the JA3/browser shaping
  for the next handshake; opens websocket handles
- WebSocketHandle: one live websocket with write/read/close primitives

Library exceptions pass through untouched; the manager decides how each
failure is reported.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from curl_cffi import CurlOpt
from curl_cffi.requests import AsyncSession
from curl_cffi.requests.impersonate import TLS_CIPHER_NAME_MAP, TLS_EC_CURVES_MAP

from wsbridge.config import settings
from wsbridge.exceptions import ConfigurationError
from wsbridge.models import Browser

logger = structlog.get_logger()

OrderedHeaders = List[Tuple[str, str]]

# Browser profile -> curl_cffi impersonation target
IMPERSONATE_TARGETS: Dict[Browser, str] = {
    Browser.CHROME: "chrome",
    Browser.FIREFOX: "firefox",
    Browser.OPERA: "chrome",  # Chromium based, no dedicated target
    Browser.SAFARI: "safari",
    Browser.EDGE: "edge",
    Browser.IOS: "safari_ios",
    Browser.ANDROID: "chrome_android",
}

_JA3_LIST = r"\d+(?:-\d+)*"
_JA3_PATTERN = re.compile(rf"^\d+,{_JA3_LIST},{_JA3_LIST},{_JA3_LIST},{_JA3_LIST}$")

# Handshake shaping curl_cffi can reproduce
SUPPORTED_TLS_VERSION = 771
SUPPORTED_POINT_FORMATS = "0"


def resolve_browser(browser: Optional[str]) -> Browser:
    """
    Map a browser identifier to a Browser profile.

    Empty or missing identifiers fall back to settings.default_browser.

    Raises:
        ValueError: unknown profile
        ConfigurationError: no profile given and the default is unknown
    """
    supported = ", ".join(b.value for b in Browser)
    if not browser or not browser.strip():
        try:
            return Browser(settings.default_browser.strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"invalid default_browser '{settings.default_browser}' (supported: {supported})",
                details={"setting": "default_browser"},
            )

    try:
        return Browser(browser.strip().lower())
    except ValueError:
        raise ValueError(f"unknown browser '{browser}' (supported: {supported})")


def validate_ja3(ja3: Optional[str]) -> str:
    """
    Check a JA3 string against what curl_cffi can put on the wire.

    Layout is version,ciphers,extensions,curves,point_formats. Only TLS 1.2
    (771) records, ciphers and curves known to curl_cffi, and uncompressed
    point format (0) are accepted.

    Raises:
        ValueError: empty, malformed or unsupported string
    """
    if not ja3 or not ja3.strip():
        raise ValueError("empty JA3 string")
    ja3 = ja3.strip()
    if not _JA3_PATTERN.match(ja3):
        raise ValueError(f"malformed JA3 string '{ja3}'")

    version, ciphers, _extensions, curves, point_formats = ja3.split(",")
    if int(version) != SUPPORTED_TLS_VERSION:
        raise ValueError(f"unsupported TLS version {version} (only {SUPPORTED_TLS_VERSION})")

    unknown_ciphers = [c for c in ciphers.split("-") if int(c) not in TLS_CIPHER_NAME_MAP]
    if unknown_ciphers:
        raise ValueError(f"unsupported cipher(s) {'-'.join(unknown_ciphers)}")

    unknown_curves = [c for c in curves.split("-") if int(c) not in TLS_EC_CURVES_MAP]
    if unknown_curves:
        raise ValueError(f"unsupported curve(s) {'-'.join(unknown_curves)}")

    if point_formats != SUPPORTED_POINT_FORMATS:
        raise ValueError(f"unsupported point formats {point_formats} (only {SUPPORTED_POINT_FORMATS})")
    return ja3


class WebSocketHandle:
    """A live websocket returned by FingerprintSession.open_connection."""

    def __init__(self, websocket, url: str):
        self._ws = websocket
        self.url = url

    async def write_message(self, payload: str) -> None:
        """Send one text frame."""
        await self._ws.send_str(payload)

    async def read_message(self) -> bytes:
        """Block until the next complete inbound message."""
        data, _flags = await self._ws.recv()
        return data

    async def close(self) -> None:
        await self._ws.close()
        logger.debug("websocket_handle_closed", url=self.url)


class FingerprintSession:
    """
    Session-level handshake configuration plus the curl_cffi session.

    The curl_cffi AsyncSession is built on the first connection and again
    after close(), so the same FingerprintSession can serve a later
    connect. The fingerprint survives close().
    """

    def __init__(self):
        self.ja3: Optional[str] = None
        self.browser: Browser = resolve_browser(None)
        self._session: Optional[AsyncSession] = None

    @property
    def impersonate(self) -> str:
        return IMPERSONATE_TARGETS[self.browser]

    def apply_fingerprint(self, ja3: Optional[str], browser: Optional[str]) -> None:
        """
        Configure the TLS client hello of the next connection.

        Raises:
            ValueError: malformed or unsupported JA3 string, unknown browser
            ConfigurationError: no browser given and default_browser is invalid
        """
        profile = resolve_browser(browser)
        fingerprint = validate_ja3(ja3)
        self.browser = profile
        self.ja3 = fingerprint
        logger.debug("fingerprint_configured", browser=profile.value, impersonate=self.impersonate)

    def _ensure_session(self) -> AsyncSession:
        if self._session is None:
            self._session = AsyncSession()
        return self._session

    async def open_connection(
        self,
        url: str,
        read_buffer_size: int,
        write_buffer_size: int,
        headers: Sequence[Tuple[str, str]],
        timeout: Optional[float] = None,
    ) -> WebSocketHandle:
        """Perform the websocket handshake with the current fingerprint."""
        session = self._ensure_session()
        websocket = await session.ws_connect(
            url,
            headers=list(headers),
            impersonate=self.impersonate,
            ja3=self.ja3,
            timeout=timeout,
            curl_options={
                CurlOpt.BUFFERSIZE: read_buffer_size,
                CurlOpt.UPLOAD_BUFFERSIZE: write_buffer_size,
            },
        )
        return WebSocketHandle(websocket, url)

    async def close(self) -> None:
        """Release the curl_cffi session. Safe to call repeatedly."""
        session, self._session = self._session, None
        if session is not None:
            await session.close()
