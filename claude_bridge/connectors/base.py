"""
Abstract chat transport interface.

Every platform connector (stdin harness, Telegram) inherits from
BotConnector and implements three operations: start(), recv_message() and
send_message(). The bridge drives connectors only through these and never
depends on platform details.
"""

import asyncio
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar, Optional

logger = logging.getLogger(__name__)

# Patterns that may leak sensitive info in exception messages
_SENSITIVE_PATTERNS = [
    (re.compile(r"(bot|token)[\"']?\s*[:=]\s*[\"']?([a-zA-Z0-9:_-]{20,})", re.IGNORECASE), r"\1=<REDACTED>"),
    (re.compile(r"bot\d+:[A-Za-z0-9_-]{20,}"), "bot<REDACTED>"),
]


class ConnectorState(StrEnum):
    """Connector lifecycle states."""

    STOPPED = "stopped"
    RUNNING = "running"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class IncomingMessage:
    """A text message received from a chat platform."""

    sender: str
    text: str
    display_name: str = ""
    remark_name: str = ""


def split_message(text: str, max_len: int) -> list[str]:
    """Split a reply into chunks of at most max_len characters.

    A chunk ends at the last newline only when that newline is past the
    middle of the chunk; otherwise the text is cut at max_len. Leading
    whitespace of the remainder is dropped.
    """
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        newline = remaining.rfind("\n", 0, max_len)
        split_at = newline if newline >= max_len // 2 else max_len
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    return chunks


# Consecutive connection failures before a connector gives up
MAX_RECONNECT_ATTEMPTS = 10
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_CAP_SECONDS = 60.0

# Exception class names that mean the bot credentials are bad
FATAL_ERROR_NAMES = frozenset({"InvalidToken", "Unauthorized", "Forbidden"})


def backoff_delay(attempt: int, cap: float = BACKOFF_CAP_SECONDS) -> float:
    """Full-jitter delay before reconnect attempt ``attempt`` (1-based)."""
    ceiling = min(cap, BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
    return random.uniform(0, ceiling)


class BotConnector(ABC):
    """Base class for chat transports.

    Besides the transport operations, the base class keeps the health data
    reported by /api/health: lifecycle state, error history and inbound
    traffic (message count and the distinct chat identities seen).
    """

    platform: str = "unknown"
    max_message_length: int = 2000

    def __init__(self):
        self._status: ConnectorState = ConnectorState.STOPPED
        self._failure_count: int = 0
        self._last_error: str | None = None
        self._last_error_time: float | None = None
        self._started_at: float | None = None  # monotonic clock
        self._last_message_time: float | None = None  # wall clock for display
        self._messages_received: int = 0
        self._senders: set[str] = set()
        self._stop_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @abstractmethod
    async def start(self) -> None:
        """Connect to the platform and begin receiving messages."""

    @abstractmethod
    async def recv_message(self) -> Optional[IncomingMessage]:
        """Wait for the next inbound message. None means the transport is closed."""

    @abstractmethod
    async def send_message(self, recipient: str, text: str) -> None:
        """Send one text message to a chat identity."""

    async def stop(self) -> None:
        """Stop the connector. Subclasses with background tasks extend this."""
        self._stop_event.set()
        if self._status != ConnectorState.STOPPED:
            self._set_status(ConnectorState.STOPPED)

    async def _run_loop(self) -> None:
        """Platform-specific connection loop. Raise on failure, return on clean exit."""
        raise NotImplementedError

    _VALID_TRANSITIONS: ClassVar[dict[ConnectorState, set[ConnectorState]]] = {
        ConnectorState.STOPPED: {ConnectorState.RUNNING},
        ConnectorState.RUNNING: {ConnectorState.STOPPED, ConnectorState.RECONNECTING, ConnectorState.FAILED},
        ConnectorState.RECONNECTING: {ConnectorState.RUNNING, ConnectorState.FAILED, ConnectorState.STOPPED},
        ConnectorState.FAILED: {ConnectorState.STOPPED, ConnectorState.RUNNING},
    }

    def _set_status(self, new: ConnectorState) -> None:
        old = self._status
        if new not in self._VALID_TRANSITIONS.get(old, set()):
            logger.warning(f"{self.platform}: ignoring state change {old} -> {new}")
            return
        self._status = new

    def _sanitize_error(self, exc: Exception) -> str:
        """Exception text with bot tokens redacted, safe for /api/health."""
        msg = str(exc)
        for pattern, repl in _SENSITIVE_PATTERNS:
            msg = pattern.sub(repl, msg)
        return f"{type(exc).__name__}: {msg[:200]}"

    def _mark_received(self, sender: str) -> None:
        """Record one inbound message from a chat identity."""
        self._last_message_time = time.time()
        self._messages_received += 1
        self._senders.add(sender)

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_error = self._sanitize_error(exc)
        self._last_error_time = time.time()

    async def _wait_or_stop(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds. Returns True if stop() was called meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_with_reconnect(self, max_attempts: int = MAX_RECONNECT_ATTEMPTS) -> None:
        """Run _run_loop, reconnecting with jittered backoff until stopped.

        Gives up after ``max_attempts`` consecutive failures, or at once when
        the platform rejects the bot credentials.
        """
        attempt = 0
        while not self._stop_event.is_set():
            try:
                self._set_status(ConnectorState.RUNNING)
                self._started_at = time.monotonic()
                await self._run_loop()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                attempt += 1
                self._record_failure(e)
                if type(e).__name__ in FATAL_ERROR_NAMES:
                    self._set_status(ConnectorState.FAILED)
                    logger.error(f"{self.platform}: credentials rejected, not retrying: {self._last_error}")
                    return
                if attempt >= max_attempts:
                    self._set_status(ConnectorState.FAILED)
                    logger.error(
                        f"{self.platform}: giving up after {attempt} attempts, "
                        f"{len(self._senders)} chat(s) will get no replies. Last error: {self._last_error}"
                    )
                    return
                self._set_status(ConnectorState.RECONNECTING)
                delay = backoff_delay(attempt)
                logger.warning(
                    f"{self.platform}: connection lost ({attempt}/{max_attempts}), "
                    f"retrying in {delay:.1f}s: {self._last_error}"
                )
                if await self._wait_or_stop(delay):
                    return
            else:
                if attempt:
                    logger.info(
                        f"{self.platform}: reconnected after {attempt} attempt(s), "
                        f"{len(self._senders)} known chat(s)"
                    )
                return

    @property
    def status(self) -> dict:
        """Connector health for /api/health."""
        uptime = None
        if self._started_at is not None and self._status == ConnectorState.RUNNING:
            uptime = round(time.monotonic() - self._started_at)
        return {
            "platform": self.platform,
            "status": self._status.value,
            "running": self._status == ConnectorState.RUNNING,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
            "last_error_time": self._last_error_time,
            "uptime_seconds": uptime,
            "last_message_time": self._last_message_time,
            "messages_received": self._messages_received,
            "distinct_senders": len(self._senders),
        }
