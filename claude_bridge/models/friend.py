"""
Friend (chat identity) and audit log models.
"""

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field

from claude_bridge.models.tier import PermissionTier


class Friend(BaseModel):
    """A chat identity known to the bridge."""

    id: str = Field(description="Stable external user handle")
    display_name: Optional[str] = Field(default=None, description="Platform nickname")
    remark_name: Optional[str] = Field(default=None, description="Local alias or username")
    tier: Optional[PermissionTier] = Field(
        default=None,
        description="Granted tier; None means the configured default applies",
    )
    added_at: Optional[datetime] = None
    added_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def name(self) -> str:
        """Best human-readable name: remark, then nickname, then id."""
        return self.remark_name or self.display_name or self.id


class Direction(StrEnum):
    IN = "in"
    OUT = "out"


class AuditEntry(BaseModel):
    """One inbound or outbound message in the audit log."""

    id: int
    identity: str
    display_name: Optional[str] = None
    direction: Direction
    message: str
    session_token: Optional[str] = None
    created_at: datetime
