"""
Tests for the in-memory log buffer and its handler.
"""

import logging

import pytest

from claude_bridge.lib.logger import BufferedHandler, LogBuffer


@pytest.fixture
def buffer():
    return LogBuffer(maxlen=50)


@pytest.fixture
def buffered_logger(buffer):
    log = logging.getLogger("claude_bridge.tests.buffer")
    handler = BufferedHandler(buffer)
    handler.setFormatter(logging.Formatter("%(message)s"))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    yield log
    log.removeHandler(handler)


class TestBufferedHandler:
    def test_identity_extra_is_recorded(self, buffer, buffered_logger):
        buffered_logger.info("Message from Alice", extra={"identity": "u1"})

        entry = buffer.get_recent()[0]
        assert entry["identity"] == "u1"
        assert entry["level"] == "INFO"
        assert entry["message"] == "Message from Alice"

    def test_untagged_record_has_no_identity(self, buffer, buffered_logger):
        buffered_logger.warning("Docker engine slow")

        assert buffer.get_recent()[0]["identity"] is None


class TestLogBuffer:
    def test_filter_by_identity(self, buffer, buffered_logger):
        buffered_logger.info("Message from Alice", extra={"identity": "u1"})
        buffered_logger.info("Message from Bob", extra={"identity": "u2"})
        buffered_logger.error("Agent execution failed for u1", extra={"identity": "u1"})

        messages = [e["message"] for e in buffer.get_recent(identity="u1")]
        assert messages == ["Message from Alice", "Agent execution failed for u1"]

    def test_level_is_a_minimum(self, buffer, buffered_logger):
        buffered_logger.info("routine")
        buffered_logger.warning("slow")
        buffered_logger.error("broken")

        messages = [e["message"] for e in buffer.get_recent(level="warning")]
        assert messages == ["slow", "broken"]

    def test_unknown_level_ignored(self, buffer, buffered_logger):
        buffered_logger.info("routine")

        assert len(buffer.get_recent(level="chatty")) == 1

    def test_level_and_identity_combine(self, buffer, buffered_logger):
        buffered_logger.info("Message from Alice", extra={"identity": "u1"})
        buffered_logger.error("Container setup failed for u1", extra={"identity": "u1"})
        buffered_logger.error("Container setup failed for u2", extra={"identity": "u2"})

        entries = buffer.get_recent(level="error", identity="u1")
        assert [e["message"] for e in entries] == ["Container setup failed for u1"]

    def test_limit_keeps_newest(self, buffer, buffered_logger):
        for i in range(5):
            buffered_logger.info(f"line {i}")

        assert [e["message"] for e in buffer.get_recent(limit=2)] == ["line 3", "line 4"]

    def test_identities_most_recent_first(self, buffer, buffered_logger):
        buffered_logger.info("a", extra={"identity": "u1"})
        buffered_logger.info("b", extra={"identity": "u2"})
        buffered_logger.info("c")
        buffered_logger.info("d", extra={"identity": "u1"})

        assert buffer.identities() == ["u1", "u2"]

    def test_maxlen_drops_oldest(self):
        small = LogBuffer(maxlen=2)
        for i in range(3):
            small.append({"level": "INFO", "message": str(i)})

        assert [e["message"] for e in small.get_recent()] == ["1", "2"]
