"""
Execution dispatcher.

Turns one authorized chat message into one agent run inside the sender's
container:

- at most one run in flight per identity (ConcurrencyGuard)
- container ensured, session resolved or renewed, session touched
- agent invoked with a timeout and the session's continuation token
- continuation token harvested from the agent's diagnostic output
- reply bounded to MAX_RESPONSE_BYTES

Engine and storage failures are logged here and turned into the fixed
user-facing messages from lib.errors.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from claude_bridge.config import Settings
from claude_bridge.core.containers import CONTAINER_WORKSPACE, ContainerManager
from claude_bridge.db.database import Database
from claude_bridge.lib.errors import ErrorCode, user_message
from claude_bridge.models.container import ContainerInfo, ContainerStatus
from claude_bridge.models.session import Session
from claude_bridge.models.tier import PermissionTier

logger = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 4000
TRUNCATION_NOTICE = "\n\n... (response truncated)"

# The agent CLI mentions its session ID on stderr; that is the only place
# it is exposed.
# TODO: switch to a structured session marker once the sandbox image's agent
# wrapper can print one, and keep this pattern as a fallback.
SESSION_TOKEN_RE = re.compile(r"session[:\s]+([a-f0-9-]+)", re.IGNORECASE)


def truncate_response(text: str, max_bytes: int = MAX_RESPONSE_BYTES) -> str:
    """Bound a reply to max_bytes of UTF-8, notice included.

    Cuts only at character boundaries. Text that already fits is returned
    unchanged, so applying this twice gives the same result as once.
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text
    budget = max(max_bytes - len(TRUNCATION_NOTICE.encode("utf-8")), 0)
    # "ignore" drops only the partial character left at the cut
    head = encoded[:budget].decode("utf-8", errors="ignore")
    return head + TRUNCATION_NOTICE


def extract_session_token(output: str) -> Optional[str]:
    match = SESSION_TOKEN_RE.search(output)
    return match.group(1) if match else None


def is_session_expired(
    last_active: Union[datetime, str],
    expire_minutes: int,
    now: Optional[datetime] = None,
) -> bool:
    """True if more than expire_minutes whole minutes have passed since last_active.

    Unparseable timestamps count as expired; timestamps in the future do not.
    """
    if isinstance(last_active, str):
        try:
            last_active = datetime.fromisoformat(last_active)
        except ValueError:
            return True
    if last_active.tzinfo is None:
        last_active = last_active.replace(tzinfo=timezone.utc)

    elapsed = (now or datetime.now(timezone.utc)) - last_active
    if elapsed.total_seconds() < 0:
        return False
    return int(elapsed.total_seconds() // 60) > expire_minutes


def build_system_prompt(identity: str, display_name: str, tier: PermissionTier) -> str:
    """Context preamble handed to the agent for every message."""
    if tier == PermissionTier.NORMAL:
        tools_note = "Tools are disabled for this user: answer questions only."
    else:
        tools_note = f"You may use tools. Work inside {CONTAINER_WORKSPACE}."
    return (
        "You are an AI assistant reached through a chat bridge.\n"
        f"User ID: {identity}\n"
        f"User name: {display_name}\n"
        f"Permission: {tier.value} ({tier.description})\n"
        f"{tools_note}\n"
        "Keep replies concise and in plain text suitable for a chat app."
    )


class ConcurrencyGuard:
    """Set of identities with a request in flight.

    The lock covers only the membership test and update, never an engine
    call. A busy identity is rejected immediately rather than queued.
    """

    def __init__(self):
        self._active: set[str] = set()
        self._lock = asyncio.Lock()

    async def try_acquire(self, identity: str) -> bool:
        """Mark identity busy. Returns False if it already was."""
        async with self._lock:
            if identity in self._active:
                return False
            self._active.add(identity)
            return True

    async def release(self, identity: str) -> None:
        async with self._lock:
            self._active.discard(identity)

    async def is_busy(self, identity: str) -> bool:
        async with self._lock:
            return identity in self._active

    async def active(self) -> set[str]:
        async with self._lock:
            return set(self._active)


@dataclass
class DispatchResult:
    """Reply text plus the continuation token in effect, for auditing."""

    text: str
    session_token: Optional[str] = None


class ClaudeExecutor:
    """Runs agent requests with per-identity single flight."""

    def __init__(self, containers: ContainerManager, database: Database, settings: Settings):
        self.containers = containers
        self.database = database
        self.settings = settings
        self.guard = ConcurrencyGuard()

    async def execute(
        self,
        identity: str,
        display_name: str,
        tier: PermissionTier,
        message: str,
    ) -> DispatchResult:
        """Run one message through the identity's agent."""
        if not await self.guard.try_acquire(identity):
            return DispatchResult(user_message(ErrorCode.BUSY))
        try:
            return await self._run(identity, display_name, tier, message)
        finally:
            await self.guard.release(identity)

    async def _run(
        self,
        identity: str,
        display_name: str,
        tier: PermissionTier,
        message: str,
    ) -> DispatchResult:
        try:
            await self.containers.ensure_container(identity, tier)
        except Exception as e:
            logger.error(f"Container setup failed for {identity}: {e}", extra={"identity": identity})
            return DispatchResult(user_message(ErrorCode.CONTAINER_SETUP_FAILED))

        try:
            session = await self.get_or_create_session(identity)
        except Exception as e:
            logger.error(f"Session lookup failed for {identity}: {e}", extra={"identity": identity})
            return DispatchResult(user_message(ErrorCode.SESSION_ERROR))

        try:
            await self.database.touch_session(session.id)
        except Exception as e:
            logger.warning(f"Failed to touch session {session.id}: {e}", extra={"identity": identity})

        try:
            result = await self.containers.execute(
                identity,
                message,
                system_prompt=build_system_prompt(identity, display_name, tier),
                timeout=self.settings.claude.timeout,
                tier=tier,
                continuation_token=session.continuation_token,
            )
        except Exception as e:
            logger.error(f"Agent execution failed for {identity}: {e}", extra={"identity": identity})
            return DispatchResult(user_message(ErrorCode.PROCESSING_ERROR), session.continuation_token)

        # Failed runs may still have opened a resumable session
        token = extract_session_token(result.stderr) or session.continuation_token
        if token and token != session.continuation_token:
            try:
                await self.database.set_continuation_token(session.id, token)
                logger.debug(f"Captured continuation token for {identity}", extra={"identity": identity})
            except Exception as e:
                logger.warning(
                    f"Failed to store continuation token for {identity}: {e}",
                    extra={"identity": identity},
                )

        if not result.ok:
            code = ErrorCode.TIMEOUT if result.timed_out else ErrorCode.PROCESSING_ERROR
            return DispatchResult(user_message(code), token)

        return DispatchResult(truncate_response(result.stdout), token)

    async def get_or_create_session(self, identity: str) -> Session:
        """Return the active session, or a fresh one if none or expired.

        Renewal clears every session of the identity first, so a stale
        continuation token can never be picked up again.
        """
        expire = self.settings.session.expire_minutes
        session = await self.database.get_active_session(identity)
        if session and not is_session_expired(session.last_active, expire):
            return session

        if session:
            logger.info(
                f"Session {session.id} for {identity} expired, starting new one",
                extra={"identity": identity},
            )
        await self.database.clear_sessions(identity)
        return await self.database.create_session(identity)

    # =========================================================================
    # Administrative proxies (no busy check, but reset guard membership)
    # =========================================================================

    async def clear_session(
        self,
        identity: str,
        tier: Optional[PermissionTier] = None,
        restart_container: bool = False,
    ) -> int:
        """Drop the identity's sessions, optionally restarting its container."""
        cleared = await self.database.clear_sessions(identity)
        await self.guard.release(identity)
        if restart_container:
            await self.containers.stop(identity)
            await self.containers.ensure_container(identity, tier or PermissionTier.NORMAL)
        logger.info(f"Cleared {cleared} session(s) for {identity}", extra={"identity": identity})
        return cleared

    async def kill_process(self, identity: str) -> bool:
        """Kill any agent process still running in the identity's container."""
        result = await self.containers.exec(identity, "pkill -f claude || true", as_root=True)
        await self.guard.release(identity)
        return result.ok

    async def stop_container(self, identity: str) -> bool:
        await self.guard.release(identity)
        return await self.containers.stop(identity)

    async def destroy_container(self, identity: str) -> bool:
        """Remove the container and its sessions. Host volumes are kept."""
        await self.database.clear_sessions(identity)
        await self.guard.release(identity)
        return await self.containers.destroy(identity)

    async def rebuild_container(self, identity: str, tier: PermissionTier) -> str:
        await self.database.clear_sessions(identity)
        await self.guard.release(identity)
        return await self.containers.rebuild(identity, tier)

    async def stop_all(self) -> int:
        for identity in await self.guard.active():
            await self.guard.release(identity)
        return await self.containers.stop_all()

    async def list_containers(self) -> list[ContainerInfo]:
        return await self.containers.list_containers()

    async def get_container_status(self, identity: str) -> ContainerStatus:
        name = self.containers.container_name(identity)
        running = await self.containers.is_running(identity)
        if not running:
            return ContainerStatus(name=name, running=False)

        stats = await self.containers.stats(identity)
        disk = None
        result = await self.containers.exec(identity, f"du -sh {CONTAINER_WORKSPACE}")
        if result.ok and result.stdout.strip():
            disk = result.stdout.split()[0]
        return ContainerStatus(name=name, running=True, stats=stats, disk_usage=disk)
