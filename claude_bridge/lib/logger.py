"""
Logging setup for Claude Bridge.

Every record also lands in an in-memory LogBuffer that backs /api/logs.
Records logged with ``extra={"identity": ...}`` are tagged with the chat
identity they concern, so one friend's traffic can be pulled out of the
buffer without grepping message text.
"""

import logging
import sys
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# LogRecord attribute carrying the chat identity a record is about
IDENTITY_ATTR = "identity"


class LogBuffer:
    """Bounded store of recent log entries, newest last."""

    def __init__(self, maxlen: int = 1000):
        self._buffer: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def append(self, entry: dict[str, Any]) -> None:
        self._buffer.append(entry)

    def get_recent(
        self,
        limit: int = 100,
        level: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Return up to ``limit`` newest entries.

        ``level`` is a minimum severity (``warning`` also returns errors).
        ``identity`` keeps only entries tagged with that chat identity.
        """
        entries = list(self._buffer)
        if level:
            floor = logging.getLevelName(level.upper())
            if isinstance(floor, int):
                entries = [e for e in entries if _severity(e) >= floor]
        if identity:
            entries = [e for e in entries if e.get(IDENTITY_ATTR) == identity]
        return entries[-limit:] if limit < len(entries) else entries

    def identities(self) -> list[str]:
        """Distinct identities with at least one buffered entry, most recent first."""
        seen: dict[str, None] = {}
        for entry in reversed(self._buffer):
            ident = entry.get(IDENTITY_ATTR)
            if ident and ident not in seen:
                seen[ident] = None
        return list(seen)

    def clear(self) -> None:
        self._buffer.clear()


def _severity(entry: dict[str, Any]) -> int:
    value = logging.getLevelName(str(entry.get("level", "")).upper())
    return value if isinstance(value, int) else logging.NOTSET


class BufferedHandler(logging.Handler):
    """Logging handler that copies records into a LogBuffer."""

    def __init__(self, buffer: LogBuffer, level: int = logging.NOTSET):
        super().__init__(level)
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append({
                "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                IDENTITY_ATTR: getattr(record, IDENTITY_ATTR, None),
                "message": self.format(record),
            })
        except Exception:
            self.handleError(record)


_log_buffer = LogBuffer()


def get_log_buffer() -> LogBuffer:
    """Get the process-wide log buffer."""
    return _log_buffer


def setup_logging(
    level: str = "info",
    log_file: Optional[Path] = None,
    format_string: str = DEFAULT_FORMAT,
) -> None:
    """Configure the root logger with console, file and buffer handlers."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    # stderr keeps stdout free for the stdin harness replies
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(format_string))
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(format_string))
        root_logger.addHandler(file_handler)

    buffer_handler = BufferedHandler(_log_buffer, log_level)
    buffer_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(buffer_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
