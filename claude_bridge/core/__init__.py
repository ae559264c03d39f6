"""
Core business logic for Claude Bridge.
"""

from claude_bridge.core.containers import ContainerManager
from claude_bridge.core.executor import ClaudeExecutor, ConcurrencyGuard
from claude_bridge.core.router import MessageRouter

__all__ = ["ContainerManager", "ClaudeExecutor", "ConcurrencyGuard", "MessageRouter"]
