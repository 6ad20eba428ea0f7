"""
Command and response models for the line protocol
"""
from enum import Enum
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from wsbridge.exceptions import BridgeError


class Action(str, Enum):
    """Command action tags understood by the bridge"""

    CONNECT = "connect"
    SEND = "send"
    RECEIVE = "receive"
    APPLY_JA3 = "apply_ja3"
    CLOSE = "close"


class Browser(str, Enum):
    """Browser profiles accepted by apply_ja3"""

    CHROME = "chrome"
    FIREFOX = "firefox"
    OPERA = "opera"
    SAFARI = "safari"
    EDGE = "edge"
    IOS = "ios"
    ANDROID = "android"  # deprecated


class Command(BaseModel):
    """One request line from the host"""

    model_config = ConfigDict(extra="ignore")

    action: str = ""
    url: Optional[str] = None
    # Raw entries; malformed pairs are dropped by the connection manager
    headers: Optional[List[Any]] = None
    message: Any = None
    ja3: Optional[str] = None
    browser: Optional[str] = None
    timeout_ms: Optional[int] = Field(
        default=None, ge=0, description="Receive deadline in milliseconds (None = no deadline)"
    )


class Response(BaseModel):
    """One result line sent back to the host"""

    success: bool
    error: Optional[str] = None
    data: Any = None

    @classmethod
    def ok(cls, data: Any = None) -> "Response":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str) -> "Response":
        return cls(success=False, error=error)

    @classmethod
    def from_error(cls, exc: BridgeError) -> "Response":
        return cls.failure(exc.message)

    def to_json(self) -> str:
        """Compact single-line JSON with absent fields omitted."""
        return self.model_dump_json(exclude_none=True)
