"""
Telegram bot connector.

Bridges Telegram private chats to the message router. Group chats are
ignored. The Telegram user ID is the identity, the full name is the display
name and the @username is the remark name.

Uses python-telegram-bot library (optional dependency).

Install: pip install 'claude-bridge[telegram]'
"""

import asyncio
import logging
from typing import Any, Optional

from claude_bridge.connectors.base import BotConnector, ConnectorState, IncomingMessage

logger = logging.getLogger(__name__)

try:
    from telegram.ext import Application, MessageHandler, filters

    TELEGRAM_AVAILABLE = True
except ImportError:
    TELEGRAM_AVAILABLE = False

# Telegram hard limit is 4096; leave headroom
TELEGRAM_MAX_MESSAGE_LENGTH = 4000


def parse_update(update: Any) -> Optional[IncomingMessage]:
    """Extract a private text message from a Telegram update."""
    message = getattr(update, "message", None)
    user = getattr(update, "effective_user", None)
    chat = getattr(update, "effective_chat", None)
    if message is None or user is None or chat is None:
        return None
    if chat.type != "private" or not message.text:
        return None
    return IncomingMessage(
        sender=str(user.id),
        text=message.text,
        display_name=user.full_name or "",
        remark_name=user.username or "",
    )


class TelegramConnector(BotConnector):
    """Long-polls Telegram and queues private text messages."""

    platform = "telegram"

    def __init__(self, bot_token: str, max_message_length: int = TELEGRAM_MAX_MESSAGE_LENGTH):
        super().__init__()
        self.bot_token = bot_token
        self.max_message_length = max_message_length
        self._app: Optional["Application"] = None
        self._queue: asyncio.Queue[IncomingMessage] = asyncio.Queue()

    async def start(self) -> None:
        """Start Telegram long-polling."""
        if not TELEGRAM_AVAILABLE:
            raise RuntimeError(
                "python-telegram-bot not installed. "
                "Install with: pip install 'claude-bridge[telegram]'"
            )
        if not self.bot_token:
            raise RuntimeError("telegram.bot_token is not configured")

        self._stop_event.clear()
        logger.info("Telegram connector started (long-polling)")
        self._task = asyncio.create_task(self._run_with_reconnect())

    def _build_app(self) -> "Application":
        """Build a fresh Application with the message handler registered."""
        app = Application.builder().token(self.bot_token).build()
        # Commands are plain text to the router, so no CommandHandler here
        app.add_handler(
            MessageHandler(filters.TEXT & filters.ChatType.PRIVATE, self.on_text_message)
        )
        return app

    async def _run_loop(self) -> None:
        """Run long-polling until the updater dies or stop is requested.

        Builds a fresh Application each attempt so initialize()/start() are
        re-executed on reconnection.
        """
        self._app = self._build_app()
        await self._app.initialize()
        await self._app.start()
        try:
            await self._app.updater.start_polling(drop_pending_updates=True)
            # start_polling() returns immediately
            while not self._stop_event.is_set():
                if not self._app.updater.running:
                    raise RuntimeError("Telegram updater stopped unexpectedly")
                await asyncio.sleep(1)
        finally:
            try:
                if self._app.updater and self._app.updater.running:
                    await self._app.updater.stop()
                if self._app.running:
                    await self._app.stop()
                await self._app.shutdown()
            except Exception as e:
                logger.debug(f"Cleanup during _run_loop teardown: {e}")

    async def on_text_message(self, update: Any, context: Any) -> None:
        message = parse_update(update)
        if message is None:
            return
        self._mark_received(message.sender)
        await self._queue.put(message)

    async def recv_message(self) -> Optional[IncomingMessage]:
        while not self._stop_event.is_set():
            if self._status == ConnectorState.FAILED:
                return None
            try:
                return await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
        return None

    async def send_message(self, recipient: str, text: str) -> None:
        if self._app is None:
            raise RuntimeError("Telegram connector is not running")
        await self._app.bot.send_message(chat_id=int(recipient), text=text)

    async def stop(self) -> None:
        """Stop Telegram connector."""
        if self._status == ConnectorState.STOPPED:
            return
        # Set stop_event before cancelling so the backoff sleep wakes up
        self._stop_event.set()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
        self._task = None
        self._started_at = None
        self._set_status(ConnectorState.STOPPED)
        logger.info("Telegram connector stopped")
