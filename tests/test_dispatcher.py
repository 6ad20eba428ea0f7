"""
Tests for CommandDispatcher and the run_bridge loop.

Tests cover:
- Action routing and response envelopes
- Unknown actions
- Unexpected collaborator exceptions
- End-to-end stdin/stdout sessions over in-memory streams
"""
import io
import json
from unittest.mock import AsyncMock, patch

import pytest

from wsbridge.engine.connection_manager import ConnectionManager
from wsbridge.engine.dispatcher import CommandDispatcher, run_bridge
from wsbridge.models import Command

JA3 = "771,4865-4866-4867-49195-49199,45-13-43-0-16-65281,29-23-24-25-26,0"


def lines(*commands) -> io.BytesIO:
    payload = b"".join(
        (c if isinstance(c, bytes) else json.dumps(c).encode()) + b"\n" for c in commands
    )
    return io.BytesIO(payload)


def responses(output: io.BytesIO) -> list:
    return [json.loads(line) for line in output.getvalue().splitlines()]


class TestCommandDispatcher:
    """Tests for CommandDispatcher.dispatch()."""

    @pytest.fixture
    def dispatcher(self, manager):
        return CommandDispatcher(manager)

    @pytest.mark.asyncio
    async def test_connect_success(self, dispatcher, fake_session):
        """Test that connect returns a bare success."""
        response = await dispatcher.dispatch(Command(action="connect", url="wss://example/ws"))

        assert response.to_json() == '{"success":true}'
        assert fake_session.open_calls[0]["url"] == "wss://example/ws"

    @pytest.mark.asyncio
    async def test_receive_returns_data(self, dispatcher, fake_session):
        """Test that receive puts the message in data."""
        fake_session.inbound = [b'{"hello":"world"}']
        await dispatcher.dispatch(Command(action="connect", url="wss://example/ws"))

        response = await dispatcher.dispatch(Command(action="receive"))

        assert response.success is True
        assert response.data == '{"hello":"world"}'

    @pytest.mark.asyncio
    async def test_receive_passes_deadline(self, dispatcher):
        """Test that timeout_ms reaches the manager."""
        with patch.object(
            ConnectionManager, "receive", new_callable=AsyncMock, return_value="x"
        ) as mock_receive:
            await dispatcher.dispatch(Command(action="receive", timeout_ms=150))

        mock_receive.assert_awaited_once_with(timeout_ms=150)

    @pytest.mark.asyncio
    async def test_apply_ja3(self, dispatcher, fake_session):
        """Test that apply_ja3 forwards ja3 and browser."""
        response = await dispatcher.dispatch(Command(action="apply_ja3", ja3=JA3, browser="safari"))

        assert response.success is True
        assert fake_session.fingerprints == [(JA3, "safari")]

    @pytest.mark.asyncio
    async def test_send_before_connect(self, dispatcher):
        """Test that send without connection is reported, not raised."""
        response = await dispatcher.dispatch(Command(action="send", message="hi"))

        assert response.success is False
        assert response.error == "websocket not connected"
        assert response.data is None

    @pytest.mark.asyncio
    async def test_unknown_action(self, dispatcher):
        """Test that unknown actions are rejected."""
        response = await dispatcher.dispatch(Command(action="subscribe"))

        assert response.success is False
        assert response.error == "unknown command: subscribe"
        assert dispatcher.closed is False

    @pytest.mark.asyncio
    async def test_missing_action(self, dispatcher):
        """Test that a command without action is rejected."""
        response = await dispatcher.dispatch(Command())

        assert response.error == "unknown command"

    @pytest.mark.asyncio
    async def test_close_marks_dispatcher_closed(self, dispatcher):
        """Test that a successful close flags the loop to stop."""
        response = await dispatcher.dispatch(Command(action="close"))

        assert response.success is True
        assert dispatcher.closed is True

    @pytest.mark.asyncio
    async def test_failed_close_keeps_running(self, dispatcher, fake_session):
        """Test that a teardown error is reported and the loop continues."""
        fake_session.close_error = OSError("session busy")

        response = await dispatcher.dispatch(Command(action="close"))

        assert response.success is False
        assert response.error == "failed to close: session: session busy"
        assert dispatcher.closed is False

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failure(self, dispatcher):
        """Test that exceptions outside the error hierarchy never escape."""
        with patch.object(
            ConnectionManager,
            "apply_fingerprint",
            new_callable=AsyncMock,
            side_effect=RuntimeError("boom"),
        ):
            response = await dispatcher.dispatch(Command(action="apply_ja3", ja3=JA3))

        assert response.success is False
        assert response.error == "apply_ja3 failed: boom"


class TestRunBridge:
    """End-to-end tests of the read-dispatch-write loop."""

    @pytest.mark.asyncio
    async def test_connect_send_close(self, manager, fake_session):
        """Test the basic session: three successes, then exit."""
        stdin = lines(
            {"action": "connect", "url": "wss://example/ws"},
            {"action": "send", "message": {"hello": "world"}},
            {"action": "close"},
        )
        stdout = io.BytesIO()

        exit_code = await run_bridge(manager, stdin, stdout)

        assert exit_code == 0
        assert stdout.getvalue() == b'{"success":true}\n' * 3
        assert fake_session.handles[0].written == ['{"hello":"world"}']
        assert fake_session.handles[0].closed is True
        assert fake_session.close_count == 1

    @pytest.mark.asyncio
    async def test_connect_failure_does_not_stop_loop(self, manager, fake_session):
        """Test that later commands still run after a failed connect."""
        fake_session.connect_error = OSError("connection refused")
        stdin = lines(
            {"action": "connect", "url": "wss://example/ws"},
            {"action": "send", "message": {"hello": "world"}},
            {"action": "close"},
        )
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        assert responses(stdout) == [
            {"success": False, "error": "failed to connect: connection refused"},
            {"success": False, "error": "websocket not connected"},
            {"success": True},
        ]

    @pytest.mark.asyncio
    async def test_malformed_lines_get_one_response_each(self, manager):
        """Test that every malformed line gets exactly one failure response."""
        stdin = lines(b"{broken", b"", b"[]", {"action": "receive"}, {"action": "close"})
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        result = responses(stdout)
        assert len(result) == 5
        for response in result[:3]:
            assert response["success"] is False
            assert response["error"].startswith("invalid command: ")
        assert result[3] == {"success": False, "error": "websocket not connected"}
        assert result[4] == {"success": True}

    @pytest.mark.asyncio
    async def test_responses_follow_command_order(self, manager, fake_session):
        """Test strict FIFO ordering for pipelined commands."""
        fake_session.inbound = [b"one", b"two"]
        stdin = lines(
            {"action": "receive"},
            {"action": "connect", "url": "wss://example/ws"},
            {"action": "receive"},
            {"action": "bogus"},
            {"action": "receive"},
            {"action": "close"},
        )
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        assert responses(stdout) == [
            {"success": False, "error": "websocket not connected"},
            {"success": True},
            {"success": True, "data": "one"},
            {"success": False, "error": "unknown command: bogus"},
            {"success": True, "data": "two"},
            {"success": True},
        ]

    @pytest.mark.asyncio
    async def test_commands_after_close_are_not_read(self, manager):
        """Test that a successful close ends the loop."""
        stdin = lines({"action": "close"}, {"action": "connect", "url": "wss://example/ws"})
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        assert responses(stdout) == [{"success": True}]

    @pytest.mark.asyncio
    async def test_eof_releases_session(self, manager, fake_session):
        """Test that end of input closes the connection and session."""
        stdin = lines({"action": "connect", "url": "wss://example/ws"})
        stdout = io.BytesIO()

        exit_code = await run_bridge(manager, stdin, stdout)

        assert exit_code == 0
        assert responses(stdout) == [{"success": True}]
        assert fake_session.handles[0].closed is True
        assert fake_session.close_count == 1

    @pytest.mark.asyncio
    async def test_eof_logs_session_stats(self, manager):
        """Test that end of input reports the traffic counters before teardown."""
        stdin = lines(
            {"action": "connect", "url": "wss://example/ws"},
            {"action": "send", "message": "hello"},
        )

        with patch("wsbridge.engine.dispatcher.logger") as mock_logger:
            await run_bridge(manager, stdin, io.BytesIO())

        events = {c.args[0]: c.kwargs for c in mock_logger.info.call_args_list}
        summary = events["bridge_input_closed"]
        assert summary["commands"] == 2
        assert summary["connected"] is True
        assert summary["send_count"] == 1
        assert summary["bytes_sent"] == len('"hello"')

    @pytest.mark.asyncio
    async def test_fingerprint_then_connect(self, manager, fake_session):
        """Test that apply_ja3 before connect configures the session."""
        stdin = lines(
            {"action": "apply_ja3", "ja3": JA3, "browser": "chrome"},
            {"action": "connect", "url": "wss://example/ws", "headers": [["User-Agent", "Test"]]},
            {"action": "close"},
        )
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        assert responses(stdout) == [{"success": True}] * 3
        assert fake_session.fingerprints == [(JA3, "chrome")]
        assert fake_session.open_calls[0]["headers"] == [("User-Agent", "Test")]

    @pytest.mark.asyncio
    async def test_non_utf8_bytes_do_not_reject_commands(self, manager, fake_session):
        """Test that stray high bytes are replaced and the commands still run."""
        stdin = lines(
            {"action": "connect", "url": "wss://example/ws"},
            b'{"action":"send","message":"caf\xe9"}',
            b'{"action":"\xff"}',
            {"action": "close"},
        )
        stdout = io.BytesIO()

        await run_bridge(manager, stdin, stdout)

        assert responses(stdout) == [
            {"success": True},
            {"success": True},
            {"success": False, "error": "unknown command: \ufffd"},
            {"success": True},
        ]
        assert fake_session.handles[0].written == ['"caf\ufffd"']
