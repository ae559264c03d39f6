"""
Chat transports for Claude Bridge.
"""

from claude_bridge.connectors.base import (
    BotConnector,
    ConnectorState,
    IncomingMessage,
    split_message,
)

__all__ = ["BotConnector", "ConnectorState", "IncomingMessage", "split_message"]
