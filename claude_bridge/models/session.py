"""
Execution session and rate-limit models.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Session(BaseModel):
    """One continuous agent conversation for an identity."""

    id: str = Field(description="Locally generated session ID")
    identity: str = Field(description="Owning chat identity")
    continuation_token: Optional[str] = Field(
        default=None,
        description="Token learned from agent output, used to resume context",
    )
    created_at: datetime
    last_active: datetime
    message_count: int = 0


class RateLimitResult(BaseModel):
    """Outcome of a rate-limit check-and-increment."""

    allowed: bool
    reason: Optional[str] = None
