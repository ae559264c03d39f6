"""
Bridge runtime: wires the components together and pumps messages.

Startup order: Docker health check (fatal), database, sandbox image,
networks, maintenance scheduler. Then one connector is started and every
inbound message is handled in its own task.
"""

import asyncio
import logging
from typing import Optional

from claude_bridge.config import Settings
from claude_bridge.connectors.base import BotConnector, IncomingMessage, split_message
from claude_bridge.core.containers import ContainerManager
from claude_bridge.core.executor import ClaudeExecutor
from claude_bridge.core.router import MessageRouter
from claude_bridge.core.scheduler import init_scheduler, stop_scheduler
from claude_bridge.db.database import Database

logger = logging.getLogger(__name__)

# Pause between the parts of a multi-part reply
REPLY_PAUSE_SECONDS = 0.5


class Bridge:
    """Owns the component graph for one running bridge."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.database = Database(settings.db_path)
        self.containers = ContainerManager(settings.docker, settings.anthropic_api_key)
        self.executor = ClaudeExecutor(self.containers, self.database, settings)
        self.router = MessageRouter(self.database, self.executor, settings)
        self.connector: Optional[BotConnector] = None
        self._tasks: set[asyncio.Task] = set()

    async def startup(self) -> None:
        """Prepare the engine and store. Raises on anything that is fatal."""
        await self.containers.health_check()
        await self.database.connect()

        if not await self.containers.image_exists():
            logger.info(f"Image {self.settings.docker.image} not found, building")
            await self.containers.build_image()

        await self.containers.init_networks()
        await init_scheduler(self.database, self.settings.session.expire_minutes)
        logger.info(f"Bridge ready (admin={self.settings.admin_id})")

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        if self.connector:
            await self.connector.stop()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await stop_scheduler()
        await self.database.close()

    def create_connector(self, transport: Optional[str] = None) -> BotConnector:
        """Build the configured chat transport."""
        transport = transport or self.settings.transport
        if transport == "telegram":
            from claude_bridge.connectors.telegram import TelegramConnector

            return TelegramConnector(
                bot_token=self.settings.telegram.bot_token,
                max_message_length=self.settings.telegram.max_message_length,
            )
        if transport == "stdin":
            from claude_bridge.connectors.stdin import StdinConnector

            return StdinConnector()
        raise ValueError(f"Unknown transport: {transport}")

    async def serve(self, connector: BotConnector) -> None:
        """Receive messages until the connector closes."""
        while True:
            message = await connector.recv_message()
            if message is None:
                break
            task = asyncio.create_task(self.handle_incoming(connector, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def handle_incoming(self, connector: BotConnector, message: IncomingMessage) -> None:
        text = message.text.strip()
        if not text:
            return
        try:
            reply = await self.router.handle(
                message.sender, message.display_name, message.remark_name, text
            )
        except Exception as e:
            logger.error(f"Failed to handle message from {message.sender}: {e}", exc_info=True)
            return
        if reply:
            await deliver(connector, message.sender, reply)

    async def run(self, transport: Optional[str] = None) -> None:
        """Start everything and serve until the transport closes."""
        await self.startup()
        try:
            self.connector = self.create_connector(transport)
            await self.connector.start()
            await self.serve(self.connector)
        finally:
            await self.shutdown()


async def deliver(
    connector: BotConnector,
    recipient: str,
    text: str,
    pause: float = REPLY_PAUSE_SECONDS,
) -> None:
    """Send a reply in transport-sized chunks with a short pause between them."""
    chunks = split_message(text, connector.max_message_length)
    for i, chunk in enumerate(chunks):
        if i > 0:
            await asyncio.sleep(pause)
        try:
            await connector.send_message(recipient, chunk)
        except Exception as e:
            logger.error(f"{connector.platform}: failed to send to {recipient}: {e}")
            return
