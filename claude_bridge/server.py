"""
Claude Bridge admin server.

FastAPI application whose lifespan runs the bridge: the configured chat
transport is served in a background task while the HTTP API exposes
health, container and log inspection.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from claude_bridge import __version__
from claude_bridge.api import api_router
from claude_bridge.bridge import Bridge
from claude_bridge.config import Settings

logger = logging.getLogger(__name__)


def create_app(settings: Settings) -> FastAPI:
    """Build the FastAPI app for a loaded configuration."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bridge = Bridge(settings)
        await bridge.startup()
        app.state.bridge = bridge

        serve_task: Optional[asyncio.Task] = None
        try:
            bridge.connector = bridge.create_connector()
            await bridge.connector.start()
            serve_task = asyncio.create_task(bridge.serve(bridge.connector))
            logger.info(f"Server ready ({settings.transport} transport)")

            yield
        finally:
            if serve_task and not serve_task.done():
                serve_task.cancel()
                try:
                    await serve_task
                except asyncio.CancelledError:
                    pass
            await bridge.shutdown()
            app.state.bridge = None

    app = FastAPI(
        title="Claude Bridge",
        description="Admin API for the chat-to-sandbox Claude bridge",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
