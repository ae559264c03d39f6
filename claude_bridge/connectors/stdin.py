"""
Line-oriented stdin transport for local testing.

Each input line is one message:

    <id>|<nickname>|<message>
    <id>|<message>

Replies are written to stdout.
"""

import asyncio
import logging
import sys
from typing import Optional, TextIO

from claude_bridge.connectors.base import BotConnector, ConnectorState, IncomingMessage

logger = logging.getLogger(__name__)


def parse_line(line: str) -> Optional[IncomingMessage]:
    """Parse one harness line. Returns None for blank or malformed lines."""
    line = line.strip()
    if not line:
        return None
    parts = line.split("|", 2)
    if len(parts) == 3:
        sender, nickname, text = parts
    elif len(parts) == 2:
        sender, text = parts
        nickname = sender
    else:
        return None
    sender, nickname, text = sender.strip(), nickname.strip(), text.strip()
    if not sender or not text:
        return None
    return IncomingMessage(sender=sender, text=text, display_name=nickname)


class StdinConnector(BotConnector):
    """Reads messages from a text stream and prints replies."""

    platform = "stdin"

    def __init__(self, input_stream: TextIO | None = None, output_stream: TextIO | None = None):
        super().__init__()
        self._input = input_stream or sys.stdin
        self._output = output_stream or sys.stdout

    async def start(self) -> None:
        self._stop_event.clear()
        self._set_status(ConnectorState.RUNNING)
        logger.info("stdin connector started, format: id|nickname|message or id|message")

    async def recv_message(self) -> Optional[IncomingMessage]:
        while not self._stop_event.is_set():
            line = await asyncio.to_thread(self._input.readline)
            if line == "":
                logger.info("stdin closed")
                return None
            message = parse_line(line)
            if message is None:
                if line.strip():
                    logger.warning(f"Ignoring malformed line: {line.strip()[:80]}")
                continue
            self._mark_received(message.sender)
            return message
        return None

    async def send_message(self, recipient: str, text: str) -> None:
        print(f"[{recipient}] {text}", file=self._output, flush=True)
