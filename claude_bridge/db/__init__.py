"""
Database layer for Claude Bridge.
"""

from claude_bridge.db.database import Database

__all__ = ["Database"]
