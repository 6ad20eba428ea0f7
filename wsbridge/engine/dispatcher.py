"""
Command Dispatcher - maps each command to one connection manager operation.

The read -> dispatch -> write loop lives here as well. Every command gets
exactly one response, in input order, and no command failure stops the
loop; only a successful close or end of input does.
"""
from __future__ import annotations

from typing import IO, Any, Awaitable, Callable, Dict

import structlog

from wsbridge.engine.connection_manager import ConnectionManager
from wsbridge.engine.line_protocol import LineReader, LineWriter
from wsbridge.exceptions import BridgeError, UnknownActionError
from wsbridge.models import Action, Command, Response

logger = structlog.get_logger()


class CommandDispatcher:
    """Executes commands against a ConnectionManager and builds responses."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self.closed = False
        self._handlers: Dict[Action, Callable[[Command], Awaitable[Any]]] = {
            Action.CONNECT: self._connect,
            Action.SEND: self._send,
            Action.RECEIVE: self._receive,
            Action.APPLY_JA3: self._apply_ja3,
            Action.CLOSE: self._close,
        }

    async def dispatch(self, command: Command) -> Response:
        try:
            action = self._resolve_action(command.action)
            data = await self._handlers[action](command)
        except BridgeError as e:
            logger.warning(
                "command_failed",
                action=command.action,
                error=e.message,
                error_type=type(e).__name__,
                details=e.details,
            )
            return Response.from_error(e)
        except Exception as e:
            # Failure from the networking library outside its wrapped calls
            logger.exception("command_crashed", action=command.action)
            return Response.failure(f"{command.action} failed: {e}")

        if action is Action.CLOSE:
            self.closed = True
        logger.debug("command_succeeded", action=action.value)
        return Response.ok(data)

    @staticmethod
    def _resolve_action(value: str) -> Action:
        try:
            return Action(value)
        except ValueError:
            message = f"unknown command: {value}" if value else "unknown command"
            raise UnknownActionError(message, details={"action": value})

    async def _connect(self, command: Command) -> None:
        await self.manager.connect(command.url, command.headers)

    async def _send(self, command: Command) -> None:
        await self.manager.send(command.message)

    async def _receive(self, command: Command) -> str:
        return await self.manager.receive(timeout_ms=command.timeout_ms)

    async def _apply_ja3(self, command: Command) -> None:
        await self.manager.apply_fingerprint(command.ja3, command.browser)

    async def _close(self, command: Command) -> None:
        await self.manager.close()


async def run_bridge(manager: ConnectionManager, input_stream: IO, output_stream: IO) -> int:
    """
    Serve commands from ``input_stream`` until close or end of input.

    Returns the process exit code. Errors writing a response propagate.
    """
    reader = LineReader(input_stream)
    writer = LineWriter(output_stream)
    dispatcher = CommandDispatcher(manager)

    logger.info("bridge_started")
    async for item in reader:
        if isinstance(item, Response):
            writer.write(item)
            continue

        response = await dispatcher.dispatch(item)
        writer.write(response)
        if dispatcher.closed:
            logger.info("bridge_closed_by_host", commands=reader.lines_read)
            return 0

    # Host went away without close: still release the connection and session
    logger.info("bridge_input_closed", commands=reader.lines_read, **await manager.get_stats())
    try:
        await manager.close()
    except BridgeError as e:
        logger.warning("shutdown_close_failed", error=e.message)
    return 0
