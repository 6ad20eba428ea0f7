"""
Line Protocol - newline-delimited JSON framing over stdio.

Provides:
- parse_command(): one input line -> Command, or ParseError
- LineReader: async iterator yielding a Command per line, or a failure
  Response for lines that do not parse, until end of input
- LineWriter: one Response -> one flushed output line
"""
from __future__ import annotations

import asyncio
import io
import json
import threading
from typing import IO, Union

import structlog
from pydantic import ValidationError

from wsbridge.exceptions import ParseError
from wsbridge.models import Command, Response

logger = structlog.get_logger()

Line = Union[bytes, str]


def parse_command(line: Line) -> Command:
    """
    Parse one protocol line into a Command.

    Raises:
        ParseError: line is not JSON, not an object, or has
            fields of the wrong type
    """
    # Stray non-UTF-8 bytes become U+FFFD; the command itself still runs
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.rstrip("\r\n")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid command: {e}", details={"reason": "json"})

    if not isinstance(payload, dict):
        raise ParseError(
            f"invalid command: expected a JSON object, got {type(payload).__name__}",
            details={"reason": "shape"},
        )

    try:
        return Command.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or "command"
        raise ParseError(
            f"invalid command: {location}: {first['msg']}",
            details={"reason": "fields", "error_count": e.error_count()},
        )


class LineReader:
    """
    Async iterator over the commands of an input stream.

    Each line produces exactly one item: a Command, or a failure Response
    when the line is malformed. End of input stops iteration.
    """

    def __init__(self, stream: IO):
        self.stream = stream
        self.lines_read = 0

    def __aiter__(self) -> "LineReader":
        return self

    async def __anext__(self) -> Union[Command, Response]:
        line = await self._readline()
        if not line:
            logger.debug("input_eof", lines_read=self.lines_read)
            raise StopAsyncIteration

        self.lines_read += 1
        try:
            return parse_command(line)
        except ParseError as e:
            logger.warning("command_parse_failed", line_number=self.lines_read, error=e.message)
            return Response.from_error(e)

    async def _readline(self) -> Line:
        """
        Read one line on a daemon thread.

        The default executor is not used: its shutdown joins workers, so a
        read blocked on the host would hold up interpreter exit after Ctrl-C.
        A daemon thread is simply abandoned.
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(line=None, error=None):
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(line)

        def read():
            try:
                line = self.stream.readline()
            except Exception as e:
                line, error = None, e
            else:
                error = None
            try:
                loop.call_soon_threadsafe(deliver, line, error)
            except RuntimeError:
                # Loop already closed; nobody is waiting for this line
                pass

        threading.Thread(target=read, name="wsbridge-stdin", daemon=True).start()
        return await future


class LineWriter:
    """Writes one JSON response per line and flushes immediately."""

    def __init__(self, stream: IO):
        self.stream = stream
        self._text = isinstance(stream, io.TextIOBase)
        self.lines_written = 0

    def write(self, response: Response) -> None:
        line = response.to_json() + "\n"
        if self._text:
            self.stream.write(line)
        else:
            self.stream.write(line.encode("utf-8"))
        self.stream.flush()
        self.lines_written += 1
