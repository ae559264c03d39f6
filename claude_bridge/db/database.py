"""
SQLite store for friends, sessions, the audit log and rate-limit counters.

Provides async database operations using aiosqlite.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from claude_bridge.lib.errors import StoreError
from claude_bridge.models.friend import AuditEntry, Direction, Friend
from claude_bridge.models.session import RateLimitResult, Session
from claude_bridge.models.tier import PermissionTier

logger = logging.getLogger(__name__)

RATE_LIMIT_MINUTE_REASON = "Too many requests, please try again later"
RATE_LIMIT_DAILY_REASON = "Daily request quota exhausted"

WINDOW_KEY_FORMAT = "%Y-%m-%dT%H:%M:00"
DAY_KEY_FORMAT = "%Y-%m-%d"


SCHEMA_SQL = """
-- Known chat identities and their permission tier
CREATE TABLE IF NOT EXISTS friends (
    id TEXT PRIMARY KEY,
    display_name TEXT,
    remark_name TEXT,
    -- NULL: not granted yet, the configured default tier applies
    tier TEXT CHECK (tier IN ('admin', 'trusted', 'normal', 'blocked')),
    added_at TEXT NOT NULL,
    added_by TEXT,
    notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_friends_tier ON friends(tier);

-- Agent execution sessions
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    identity TEXT NOT NULL,
    continuation_token TEXT,
    created_at TEXT NOT NULL,
    last_active TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sessions_identity ON sessions(identity, last_active DESC);

-- Message audit trail
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    identity TEXT NOT NULL,
    display_name TEXT,
    direction TEXT NOT NULL CHECK (direction IN ('in', 'out')),
    message TEXT NOT NULL,
    session_token TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_identity ON audit_log(identity, id DESC);

-- Per-minute request counters
CREATE TABLE IF NOT EXISTS rate_limits (
    identity TEXT NOT NULL,
    window_start TEXT NOT NULL,
    request_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (identity, window_start)
);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def window_key(now: datetime) -> str:
    """Truncate a timestamp to its minute-granularity rate-limit window key."""
    return now.strftime(WINDOW_KEY_FORMAT)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class Database:
    """Async SQLite store shared by the router and the executor."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        # Serializes the read-then-write rate limit check across tasks
        self._rate_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to database and initialize schema."""
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.executescript(SCHEMA_SQL)
        await self._connection.commit()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def connection(self) -> aiosqlite.Connection:
        """Get active connection, raising if not connected."""
        if not self._connection:
            raise StoreError("Database not connected")
        return self._connection

    # =========================================================================
    # Friends
    # =========================================================================

    async def get_friend(self, identity: str) -> Optional[Friend]:
        async with self.connection.execute(
            "SELECT * FROM friends WHERE id = ?", (identity,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_friend(row) if row else None

    async def upsert_friend(
        self,
        identity: str,
        display_name: Optional[str] = None,
        remark_name: Optional[str] = None,
        tier: Optional[PermissionTier] = None,
        added_by: Optional[str] = None,
    ) -> None:
        """Insert a friend or update the fields that were provided.

        None values leave the stored column untouched on conflict. A new row
        without a tier has no grant of its own and follows the default tier.
        """
        await self.connection.execute(
            """
            INSERT INTO friends (id, display_name, remark_name, tier, added_at, added_by)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                display_name = COALESCE(excluded.display_name, friends.display_name),
                remark_name = COALESCE(excluded.remark_name, friends.remark_name),
                tier = COALESCE(?, friends.tier),
                added_by = COALESCE(excluded.added_by, friends.added_by)
            """,
            (
                identity,
                display_name,
                remark_name,
                tier.value if tier else None,
                _utcnow().isoformat(),
                added_by,
                tier.value if tier else None,
            ),
        )
        await self.connection.commit()

    async def set_friend_tier(self, identity: str, tier: PermissionTier) -> bool:
        """Change a friend's tier. Returns False if the friend is unknown."""
        cursor = await self.connection.execute(
            "UPDATE friends SET tier = ? WHERE id = ?", (tier.value, identity)
        )
        await self.connection.commit()
        return cursor.rowcount > 0

    async def list_friends(self, tier: Optional[PermissionTier] = None) -> list[Friend]:
        """List all friends, or only those at one tier."""
        query = "SELECT * FROM friends"
        params: list[Any] = []
        if tier is not None:
            query += " WHERE tier = ?"
            params.append(tier.value)
        query += " ORDER BY added_at, id"

        async with self.connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_friend(row) for row in rows]

    async def find_friends(self, substring: str) -> list[Friend]:
        """Find friends whose display name or remark name contains a substring."""
        pattern = f"%{_escape_like(substring)}%"
        async with self.connection.execute(
            """
            SELECT * FROM friends
            WHERE display_name LIKE ? ESCAPE '\\' OR remark_name LIKE ? ESCAPE '\\'
            ORDER BY added_at, id
            """,
            (pattern, pattern),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_friend(row) for row in rows]

    async def count_friends(self) -> int:
        async with self.connection.execute("SELECT COUNT(*) FROM friends") as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    # =========================================================================
    # Sessions
    # =========================================================================

    async def get_active_session(self, identity: str) -> Optional[Session]:
        """Get the most recently touched session for an identity."""
        async with self.connection.execute(
            """
            SELECT * FROM sessions WHERE identity = ?
            ORDER BY last_active DESC, rowid DESC LIMIT 1
            """,
            (identity,),
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_session(row) if row else None

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self.connection.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_session(row) if row else None

    async def create_session(
        self, identity: str, continuation_token: Optional[str] = None
    ) -> Session:
        """Create a fresh session. Prior sessions are left in place."""
        session_id = str(uuid.uuid4())
        now = _utcnow().isoformat()
        await self.connection.execute(
            """
            INSERT INTO sessions (id, identity, continuation_token, created_at, last_active, message_count)
            VALUES (?, ?, ?, ?, ?, 0)
            """,
            (session_id, identity, continuation_token, now, now),
        )
        await self.connection.commit()
        return await self.get_session(session_id)  # type: ignore

    async def touch_session(self, session_id: str) -> None:
        """Advance last_active and count one more message."""
        await self.connection.execute(
            """
            UPDATE sessions SET last_active = ?, message_count = message_count + 1
            WHERE id = ?
            """,
            (_utcnow().isoformat(), session_id),
        )
        await self.connection.commit()

    async def set_continuation_token(self, session_id: str, token: str) -> None:
        await self.connection.execute(
            "UPDATE sessions SET continuation_token = ? WHERE id = ?",
            (token, session_id),
        )
        await self.connection.commit()

    async def clear_sessions(self, identity: str) -> int:
        """Delete all sessions of an identity."""
        cursor = await self.connection.execute(
            "DELETE FROM sessions WHERE identity = ?", (identity,)
        )
        await self.connection.commit()
        return cursor.rowcount

    async def delete_sessions_older_than(
        self, minutes: int, now: Optional[datetime] = None
    ) -> int:
        """Purge sessions whose last activity is older than the given window."""
        cutoff = (now or _utcnow()) - timedelta(minutes=minutes)
        cursor = await self.connection.execute(
            "DELETE FROM sessions WHERE last_active < ?", (cutoff.isoformat(),)
        )
        await self.connection.commit()
        return cursor.rowcount

    # =========================================================================
    # Audit Log
    # =========================================================================

    async def append_audit(
        self,
        identity: str,
        display_name: Optional[str],
        direction: Direction,
        message: str,
        session_token: Optional[str] = None,
    ) -> None:
        await self.connection.execute(
            """
            INSERT INTO audit_log (identity, display_name, direction, message, session_token, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (identity, display_name, direction.value, message, session_token, _utcnow().isoformat()),
        )
        await self.connection.commit()

    async def get_audit_for(self, identity: str, limit: int = 20) -> list[AuditEntry]:
        """Most recent audit entries for one identity, newest first."""
        async with self.connection.execute(
            "SELECT * FROM audit_log WHERE identity = ? ORDER BY id DESC LIMIT ?",
            (identity, limit),
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_audit(row) for row in rows]

    async def get_recent_audit(self, limit: int = 20) -> list[AuditEntry]:
        """Most recent audit entries across all identities, newest first."""
        async with self.connection.execute(
            "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_audit(row) for row in rows]

    # =========================================================================
    # Rate Limiting
    # =========================================================================

    async def check_rate_limit(
        self,
        identity: str,
        max_per_minute: int,
        max_per_day: int,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Check both limits and, if allowed, count this request.

        Only the count already stored for the current minute is compared
        against max_per_minute, so a limit of 0 still lets the first request
        of each minute through.
        """
        now = now or _utcnow()
        window = window_key(now)
        day = now.strftime(DAY_KEY_FORMAT)

        async with self._rate_lock:
            async with self.connection.execute(
                "SELECT request_count FROM rate_limits WHERE identity = ? AND window_start = ?",
                (identity, window),
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None and row[0] >= max_per_minute:
                return RateLimitResult(allowed=False, reason=RATE_LIMIT_MINUTE_REASON)

            async with self.connection.execute(
                """
                SELECT COALESCE(SUM(request_count), 0) FROM rate_limits
                WHERE identity = ? AND window_start >= ?
                """,
                (identity, day),
            ) as cursor:
                daily_row = await cursor.fetchone()
            daily_total = daily_row[0] if daily_row else 0
            if daily_total >= max_per_day:
                return RateLimitResult(allowed=False, reason=RATE_LIMIT_DAILY_REASON)

            await self.connection.execute(
                """
                INSERT INTO rate_limits (identity, window_start, request_count) VALUES (?, ?, 1)
                ON CONFLICT(identity, window_start) DO UPDATE SET request_count = request_count + 1
                """,
                (identity, window),
            )
            await self.connection.commit()

        return RateLimitResult(allowed=True)

    async def get_request_count(self, identity: str, now: Optional[datetime] = None) -> int:
        """Requests counted in the current minute window."""
        async with self.connection.execute(
            "SELECT request_count FROM rate_limits WHERE identity = ? AND window_start = ?",
            (identity, window_key(now or _utcnow())),
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def cleanup_rate_limits(self, now: Optional[datetime] = None) -> int:
        """Delete rate windows older than one day."""
        cutoff = window_key((now or _utcnow()) - timedelta(days=1))
        cursor = await self.connection.execute(
            "DELETE FROM rate_limits WHERE window_start < ?", (cutoff,)
        )
        await self.connection.commit()
        return cursor.rowcount

    # =========================================================================
    # Helpers
    # =========================================================================

    def _row_to_friend(self, row: aiosqlite.Row) -> Friend:
        return Friend(
            id=row["id"],
            display_name=row["display_name"],
            remark_name=row["remark_name"],
            tier=PermissionTier(row["tier"]) if row["tier"] else None,
            added_at=datetime.fromisoformat(row["added_at"]),
            added_by=row["added_by"],
            notes=row["notes"],
        )

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            identity=row["identity"],
            continuation_token=row["continuation_token"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_active=datetime.fromisoformat(row["last_active"]),
            message_count=row["message_count"],
        )

    def _row_to_audit(self, row: aiosqlite.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"],
            identity=row["identity"],
            display_name=row["display_name"],
            direction=Direction(row["direction"]),
            message=row["message"],
            session_token=row["session_token"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
