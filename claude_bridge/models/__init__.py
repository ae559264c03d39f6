"""
Pydantic models for Claude Bridge.
"""

from claude_bridge.models.container import (
    ContainerInfo,
    ContainerStats,
    ContainerStatus,
    ExecResult,
)
from claude_bridge.models.friend import AuditEntry, Direction, Friend
from claude_bridge.models.session import RateLimitResult, Session
from claude_bridge.models.tier import GRANTABLE_TIERS, PermissionTier, parse_tier

__all__ = [
    # Tiers
    "PermissionTier",
    "GRANTABLE_TIERS",
    "parse_tier",
    # Friends
    "Friend",
    "AuditEntry",
    "Direction",
    # Sessions
    "Session",
    "RateLimitResult",
    # Containers
    "ContainerInfo",
    "ContainerStats",
    "ContainerStatus",
    "ExecResult",
]
