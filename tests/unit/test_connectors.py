"""
Tests for chat transports and reply delivery.
"""

import io
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from claude_bridge.bridge import Bridge, deliver
from claude_bridge.connectors.base import (
    BotConnector,
    ConnectorState,
    IncomingMessage,
    backoff_delay,
    split_message,
)
from claude_bridge.connectors.stdin import StdinConnector, parse_line
from claude_bridge.connectors.telegram import TelegramConnector, parse_update


class RecordingConnector(BotConnector):
    """In-memory connector that records what it sends."""

    platform = "recording"

    def __init__(self, max_message_length: int = 2000, fail_on: int | None = None):
        super().__init__()
        self.max_message_length = max_message_length
        self.sent: list[tuple[str, str]] = []
        self._fail_on = fail_on

    async def start(self) -> None:
        self._set_status(ConnectorState.RUNNING)

    async def recv_message(self):
        return None

    async def send_message(self, recipient: str, text: str) -> None:
        if self._fail_on is not None and len(self.sent) == self._fail_on:
            raise ConnectionError("send failed")
        self.sent.append((recipient, text))


# ---------------------------------------------------------------------------
# Message splitting
# ---------------------------------------------------------------------------


class TestSplitMessage:
    def test_short_message_single_chunk(self):
        assert split_message("hello", 10) == ["hello"]

    def test_exact_length_single_chunk(self):
        assert split_message("a" * 10, 10) == ["a" * 10]

    def test_empty_message(self):
        assert split_message("", 10) == []

    def test_splits_at_late_newline(self):
        text = "aaaaaaa\nbbbbbbb"
        assert split_message(text, 10) == ["aaaaaaa", "bbbbbbb"]

    def test_hard_cut_when_newline_too_early(self):
        text = "ab\n" + "c" * 12
        assert split_message(text, 10) == ["ab\nccccccc", "ccccc"]

    def test_remainder_leading_whitespace_dropped(self):
        chunks = split_message("a" * 10 + "   tail", 10)
        assert chunks == ["a" * 10, "tail"]

    def test_chunks_never_exceed_limit(self):
        text = ("word " * 50 + "\n") * 20
        assert all(len(c) <= 64 for c in split_message(text, 64))


# ---------------------------------------------------------------------------
# stdin harness
# ---------------------------------------------------------------------------


class TestParseLine:
    def test_three_fields(self):
        message = parse_line("u1|Alice|hello there\n")
        assert message == IncomingMessage(sender="u1", text="hello there", display_name="Alice")

    def test_two_fields_uses_id_as_name(self):
        message = parse_line("u1|hello")
        assert message.display_name == "u1"
        assert message.text == "hello"

    def test_pipes_in_message_kept(self):
        assert parse_line("u1|Alice|a|b|c").text == "a|b|c"

    @pytest.mark.parametrize("line", ["", "   \n", "no separator", "|text", "u1|"])
    def test_invalid(self, line):
        assert parse_line(line) is None


class TestStdinConnector:
    @pytest.mark.asyncio
    async def test_reads_until_eof(self):
        connector = StdinConnector(io.StringIO("u1|Alice|hi\ngarbage\n\nu2|yo\n"), io.StringIO())
        await connector.start()

        first = await connector.recv_message()
        second = await connector.recv_message()
        third = await connector.recv_message()

        assert (first.sender, first.text) == ("u1", "hi")
        assert (second.sender, second.text) == ("u2", "yo")
        assert third is None
        assert connector.status["messages_received"] == 2
        assert connector.status["distinct_senders"] == 2

    @pytest.mark.asyncio
    async def test_send_writes_line(self):
        output = io.StringIO()
        connector = StdinConnector(io.StringIO(), output)
        await connector.send_message("u1", "reply")
        assert output.getvalue() == "[u1] reply\n"

    @pytest.mark.asyncio
    async def test_status(self):
        connector = StdinConnector(io.StringIO(), io.StringIO())
        await connector.start()
        assert connector.status["running"] is True
        await connector.stop()
        assert connector.status["status"] == "stopped"


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------


def _update(chat_type="private", text="hi", username="alice"):
    return SimpleNamespace(
        message=SimpleNamespace(text=text),
        effective_user=SimpleNamespace(id=42, full_name="Alice A", username=username),
        effective_chat=SimpleNamespace(type=chat_type),
    )


class TestTelegram:
    def test_parse_private_text(self):
        message = parse_update(_update())
        assert message == IncomingMessage(
            sender="42", text="hi", display_name="Alice A", remark_name="alice"
        )

    def test_parse_without_username(self):
        assert parse_update(_update(username=None)).remark_name == ""

    def test_group_chat_ignored(self):
        assert parse_update(_update(chat_type="group")) is None

    def test_non_text_ignored(self):
        assert parse_update(_update(text=None)) is None

    @pytest.mark.asyncio
    async def test_missing_token_refused(self):
        connector = TelegramConnector(bot_token="")
        with patch("claude_bridge.connectors.telegram.TELEGRAM_AVAILABLE", True):
            with pytest.raises(RuntimeError, match="bot_token"):
                await connector.start()

    @pytest.mark.asyncio
    async def test_queued_update_is_received(self):
        connector = TelegramConnector(bot_token="123:abc")
        await connector.on_text_message(_update(text="queued"), None)
        message = await connector.recv_message()
        assert message.text == "queued"
        assert message.sender == "42"

    def test_error_sanitized(self):
        connector = TelegramConnector(bot_token="x")
        error = connector._sanitize_error(
            RuntimeError("bad bot123456:ABCDEFGHIJKLMNOPQRSTUVWXYZ")
        )
        assert "ABCDEFGHIJ" not in error


# ---------------------------------------------------------------------------
# Reconnect
# ---------------------------------------------------------------------------


class Unauthorized(Exception):
    """Stands in for telegram.error.Unauthorized, matched by class name."""


class FlakyConnector(RecordingConnector):
    """Connector whose platform loop raises the queued errors in turn."""

    platform = "flaky"

    def __init__(self, errors):
        super().__init__()
        self.errors = list(errors)
        self.runs = 0

    async def _run_loop(self) -> None:
        self.runs += 1
        if self.errors:
            raise self.errors.pop(0)


class TestReconnect:
    def test_backoff_within_exponential_ceiling(self):
        for attempt in range(1, 12):
            delay = backoff_delay(attempt)
            assert 0 <= delay <= min(60.0, 2 ** (attempt - 1))

    def test_backoff_uses_full_range(self):
        with patch("claude_bridge.connectors.base.random.uniform", side_effect=lambda lo, hi: hi):
            assert backoff_delay(3) == 4.0
            assert backoff_delay(20) == 60.0

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self):
        connector = FlakyConnector([ConnectionError("reset"), ConnectionError("reset")])
        connector._mark_received("u1")

        with patch("claude_bridge.connectors.base.backoff_delay", return_value=0):
            await connector._run_with_reconnect()

        assert connector.runs == 3
        assert connector.status["status"] == "running"
        assert connector.status["failure_count"] == 2
        assert connector.status["last_error"] == "ConnectionError: reset"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        connector = FlakyConnector([ConnectionError("down")] * 5)

        with patch("claude_bridge.connectors.base.backoff_delay", return_value=0):
            await connector._run_with_reconnect(max_attempts=3)

        assert connector.runs == 3
        assert connector.status["status"] == "failed"

    @pytest.mark.asyncio
    async def test_rejected_credentials_not_retried(self):
        connector = FlakyConnector([Unauthorized("bot123456:ABCDEFGHIJKLMNOPQRSTUVWXYZ")])

        await connector._run_with_reconnect()

        assert connector.runs == 1
        assert connector.status["status"] == "failed"
        assert "ABCDEFGHIJ" not in connector.status["last_error"]

    @pytest.mark.asyncio
    async def test_stopped_connector_does_not_run(self):
        connector = FlakyConnector([ConnectionError("down")] * 5)
        connector._stop_event.set()

        await connector._run_with_reconnect()

        assert connector.runs == 0

    def test_status_counts_senders(self):
        connector = RecordingConnector()
        for sender in ["u1", "u2", "u1"]:
            connector._mark_received(sender)

        status = connector.status
        assert status["messages_received"] == 3
        assert status["distinct_senders"] == 2
        assert status["last_message_time"] is not None


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDeliver:
    @pytest.mark.asyncio
    async def test_chunks_sent_in_order_with_pause(self):
        connector = RecordingConnector(max_message_length=10)
        with patch("claude_bridge.bridge.asyncio.sleep", new=AsyncMock()) as sleep:
            await deliver(connector, "u1", "aaaaaaa\nbbbbbbb\nccccccc")

        assert [text for _, text in connector.sent] == ["aaaaaaa", "bbbbbbb", "ccccccc"]
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_single_chunk_no_pause(self):
        connector = RecordingConnector()
        with patch("claude_bridge.bridge.asyncio.sleep", new=AsyncMock()) as sleep:
            await deliver(connector, "u1", "short")
        assert connector.sent == [("u1", "short")]
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_failure_stops_delivery(self):
        connector = RecordingConnector(max_message_length=10, fail_on=1)
        with patch("claude_bridge.bridge.asyncio.sleep", new=AsyncMock()):
            await deliver(connector, "u1", "a" * 30)
        assert len(connector.sent) == 1


class TestBridgeHandleIncoming:
    @pytest.mark.asyncio
    async def test_reply_delivered(self, settings):
        bridge = Bridge(settings)
        bridge.router = MagicMock()
        bridge.router.handle = AsyncMock(return_value="pong")
        connector = RecordingConnector()

        await bridge.handle_incoming(connector, IncomingMessage(sender="u1", text="ping"))

        bridge.router.handle.assert_awaited_once_with("u1", "", "", "ping")
        assert connector.sent == [("u1", "pong")]

    @pytest.mark.asyncio
    async def test_text_trimmed_before_routing(self, settings):
        bridge = Bridge(settings)
        bridge.router = MagicMock()
        bridge.router.handle = AsyncMock(return_value="help text")
        connector = RecordingConnector()

        await bridge.handle_incoming(
            connector, IncomingMessage(sender="u1", text="  /help \n", display_name="Alice")
        )

        bridge.router.handle.assert_awaited_once_with("u1", "Alice", "", "/help")

    @pytest.mark.asyncio
    async def test_blank_text_dropped(self, settings):
        bridge = Bridge(settings)
        bridge.router = MagicMock()
        bridge.router.handle = AsyncMock(return_value="pong")
        connector = RecordingConnector()

        await bridge.handle_incoming(connector, IncomingMessage(sender="u1", text=" \n\t"))

        bridge.router.handle.assert_not_awaited()
        assert connector.sent == []

    @pytest.mark.asyncio
    async def test_no_reply_sends_nothing(self, settings):
        bridge = Bridge(settings)
        bridge.router = MagicMock()
        bridge.router.handle = AsyncMock(return_value=None)
        connector = RecordingConnector()

        await bridge.handle_incoming(connector, IncomingMessage(sender="u1", text="ping"))

        assert connector.sent == []

    @pytest.mark.asyncio
    async def test_router_error_logged_not_raised(self, settings):
        bridge = Bridge(settings)
        bridge.router = MagicMock()
        bridge.router.handle = AsyncMock(side_effect=RuntimeError("boom"))
        connector = RecordingConnector()

        await bridge.handle_incoming(connector, IncomingMessage(sender="u1", text="ping"))

        assert connector.sent == []

    def test_unknown_transport(self, settings):
        with pytest.raises(ValueError):
            Bridge(settings).create_connector("carrier-pigeon")

    def test_stdin_transport(self, settings):
        assert isinstance(Bridge(settings).create_connector("stdin"), StdinConnector)
