"""
Bridge configuration management
"""
from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Bridge settings"""

    # Websocket buffers passed to the networking library
    read_buffer_size: int = 1024
    write_buffer_size: int = 1024

    # Timeouts
    connect_timeout_sec: float = 30.0
    receive_timeout_ms: Optional[int] = None  # None = block until a message arrives

    # Fingerprinting
    default_browser: str = "chrome"

    # Logging
    project_root: Path = Path(__file__).parent.parent
    log_dir: Path = project_root / "logs"
    log_level: str = "INFO"
    log_to_file: bool = False

    class Config:
        env_prefix = "WSBRIDGE_"
        env_file = ".env"


settings = Settings()
