"""
Bridge main application

Reads newline-delimited JSON commands on stdin, drives one fingerprinted
websocket connection and writes one JSON response per command on stdout.
Logs go to stderr (and optionally a rotating file).
"""
import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from wsbridge import __version__
from wsbridge.config import settings
from wsbridge.engine.connection_manager import ConnectionManager
from wsbridge.engine.dispatcher import run_bridge
from wsbridge.exceptions import SessionInitializationError
from wsbridge.logging import setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wsbridge",
        description="Websocket bridge with TLS fingerprinting, driven over stdin/stdout",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Log level for stderr output",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        help="Also write logs to a rotating file in this directory",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Never write a log file, even if enabled in the environment",
    )
    parser.add_argument(
        "--receive-timeout-ms",
        type=int,
        default=settings.receive_timeout_ms,
        help="Default deadline for receive commands (omit to wait forever)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


async def serve(args: argparse.Namespace) -> int:
    """Build the connection manager and serve stdin until close or EOF."""
    config = settings.model_copy(update={"receive_timeout_ms": args.receive_timeout_ms})
    try:
        manager = ConnectionManager(config=config)
    except SessionInitializationError as e:
        logger.error("session_init_failed", error=e.message, **e.details)
        return 1

    return await run_bridge(manager, sys.stdin.buffer, sys.stdout.buffer)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    log_to_file = False if args.no_log_file else (bool(args.log_dir) or settings.log_to_file)
    setup_logging("bridge", level=args.log_level, log_to_file=log_to_file, log_dir=args.log_dir)

    try:
        return asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("bridge_interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
