"""
Permission tiers.

Tiers are totally ordered: blocked < normal < trusted < admin. Every
authorization decision (command gates, filter bypass, resource profile)
compares tiers with the ordinary comparison operators defined here.
"""

from enum import StrEnum
from typing import Optional


class PermissionTier(StrEnum):
    """Ordered permission level of a chat identity."""

    BLOCKED = "blocked"
    NORMAL = "normal"
    TRUSTED = "trusted"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def description(self) -> str:
        """Capability notice shown to the agent."""
        return _DESCRIPTIONS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, PermissionTier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, PermissionTier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, PermissionTier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, PermissionTier):
            return NotImplemented
        return self.rank >= other.rank


_RANK = {
    PermissionTier.BLOCKED: 0,
    PermissionTier.NORMAL: 1,
    PermissionTier.TRUSTED: 2,
    PermissionTier.ADMIN: 3,
}

_DESCRIPTIONS = {
    PermissionTier.BLOCKED: "no access",
    PermissionTier.NORMAL: "Q&A only, no tools or command execution",
    PermissionTier.TRUSTED: "full tools in the workspace, limited network access",
    PermissionTier.ADMIN: "full tools, full network access and elevated resources",
}

# Tiers an admin may grant with /allow
GRANTABLE_TIERS = (PermissionTier.NORMAL, PermissionTier.TRUSTED, PermissionTier.ADMIN)


def parse_tier(value: Optional[str]) -> Optional[PermissionTier]:
    """Parse a stored or configured tier string.

    Case-insensitive and whitespace-tolerant. Unknown or empty values return
    None, which callers treat as unauthorized.
    """
    if value is None:
        return None
    try:
        return PermissionTier(value.strip().lower())
    except ValueError:
        return None
