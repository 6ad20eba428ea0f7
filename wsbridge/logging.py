"""Central logging helpers

stdout carries the command protocol, so every handler here writes to
stderr or to a file.
"""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union
import structlog
import structlog.stdlib

from wsbridge.config import settings

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _build_file_handler(component: str, log_dir: Path) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{component}.log"
    handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
    handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
    return handler


def setup_logging(
    component: str = "bridge",
    level: Union[int, str] = logging.INFO,
    log_to_file: Optional[bool] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """Configure structlog + stdlib logging for a component"""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    if log_to_file is None:
        log_to_file = settings.log_to_file

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_to_file:
        handlers.append(_build_file_handler(component, log_dir or settings.log_dir))

    logging.basicConfig(level=level, handlers=handlers, format=_DEFAULT_FORMAT, force=True)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger(__name__).info("logging_initialized", extra={"component": component})
