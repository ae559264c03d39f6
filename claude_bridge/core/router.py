"""
Authorization and command routing.

Single entry point for chat transports:

    MessageRouter.handle(identity, display_name, remark_name, text) -> reply or None

Processing order for every inbound message:

1. audit the inbound text
2. register the sender on first contact, refresh names afterwards
3. resolve the effective tier (blocked -> no reply, unknown -> notice)
4. charge the rate limit
5. "/" commands, gated by minimum tier
6. content security filter (admins bypass)
7. hand off to the execution dispatcher
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from claude_bridge.config import Settings
from claude_bridge.core.executor import ClaudeExecutor
from claude_bridge.db.database import Database
from claude_bridge.lib.errors import ErrorCode, user_message
from claude_bridge.models.friend import AuditEntry, Direction, Friend
from claude_bridge.models.tier import GRANTABLE_TIERS, PermissionTier, parse_tier

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"
HIDDEN_CONTENT = "[hidden]"
AUDIT_COMMAND_REPLY_CHARS = 200
AUDIT_AGENT_REPLY_CHARS = 500
LOG_LINES = 20

_TIER_ICONS = {
    PermissionTier.ADMIN: "👑",
    PermissionTier.TRUSTED: "⭐",
    PermissionTier.NORMAL: "👤",
    PermissionTier.BLOCKED: "🚫",
}


def format_bytes(size: int) -> str:
    for unit, factor in (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024)):
        if size >= factor:
            return f"{size / factor:.1f}{unit}"
    return f"{size}B"


def format_logs(entries: list[AuditEntry]) -> str:
    if not entries:
        return "No log entries"
    lines = []
    for entry in entries:
        icon = "📩" if entry.direction == Direction.IN else "📤"
        when = entry.created_at.strftime("%m-%d %H:%M:%S")
        name = entry.display_name or entry.identity
        lines.append(f"{icon} [{when}] {name}: {entry.message[:60]}")
    return "\n".join(lines)


@dataclass
class CommandContext:
    identity: str
    display_name: str
    tier: PermissionTier


@dataclass(frozen=True)
class CommandSpec:
    min_tier: PermissionTier
    description: str
    handler: str


COMMANDS: dict[str, CommandSpec] = {
    "/help": CommandSpec(PermissionTier.NORMAL, "Show available commands", "_cmd_help"),
    "/status": CommandSpec(PermissionTier.NORMAL, "Show your session and container status", "_cmd_status"),
    "/clear": CommandSpec(PermissionTier.NORMAL, "Start a new conversation", "_cmd_clear"),
    "/allow": CommandSpec(PermissionTier.ADMIN, "Grant access: /allow <name> [trusted|normal|admin]", "_cmd_allow"),
    "/block": CommandSpec(PermissionTier.ADMIN, "Block a friend: /block <name>", "_cmd_block"),
    "/list": CommandSpec(PermissionTier.ADMIN, "List friends by permission", "_cmd_list"),
    "/logs": CommandSpec(PermissionTier.ADMIN, "Show recent messages: /logs [name]", "_cmd_logs"),
    "/kill": CommandSpec(PermissionTier.ADMIN, "Kill a friend's running agent: /kill <name>", "_cmd_kill"),
    "/containers": CommandSpec(PermissionTier.ADMIN, "List all containers", "_cmd_containers"),
    "/restart": CommandSpec(PermissionTier.ADMIN, "Restart a container: /restart <name>", "_cmd_restart"),
    "/destroy": CommandSpec(PermissionTier.ADMIN, "Remove a container, keep its data: /destroy <name>", "_cmd_destroy"),
    "/rebuild": CommandSpec(PermissionTier.ADMIN, "Recreate a container: /rebuild <name>", "_cmd_rebuild"),
    "/stopall": CommandSpec(PermissionTier.ADMIN, "Stop all containers", "_cmd_stopall"),
}


class MessageRouter:
    """Authorizes chat messages and routes them to commands or the agent."""

    def __init__(self, database: Database, executor: ClaudeExecutor, settings: Settings):
        self.database = database
        self.executor = executor
        self.settings = settings
        self.admin_id = settings.admin_id
        self._blocked_patterns = settings.security.compile_patterns()

    async def handle(
        self,
        identity: str,
        display_name: str,
        remark_name: str,
        text: str,
    ) -> Optional[str]:
        """Process one inbound message. Returns the reply, or None for no reply."""
        name = remark_name or display_name or identity
        logger.info(f"Message from {name} ({identity}): {text[:100]}", extra={"identity": identity})

        logged_text = text if self.settings.logging.log_message_content else HIDDEN_CONTENT
        await self._audit(identity, name, Direction.IN, logged_text)

        await self._ensure_registered(identity, display_name, remark_name)

        tier = await self.effective_tier(identity)
        if tier == PermissionTier.BLOCKED:
            logger.warning(f"Ignoring blocked user {name} ({identity})", extra={"identity": identity})
            return None
        if tier is None:
            logger.info(f"Unauthorized user {name} ({identity})", extra={"identity": identity})
            if self.settings.permissions.notify_unauthorized:
                return self.settings.permissions.unauthorized_message
            return None

        limits = self.settings.rate_limit
        try:
            result = await self.database.check_rate_limit(
                identity, limits.max_per_minute, limits.max_per_day
            )
        except Exception as e:
            logger.warning(
                f"Rate limit check failed for {identity}, allowing: {e}",
                extra={"identity": identity},
            )
        else:
            if not result.allowed:
                return f"⚠️ {result.reason}"

        if text.startswith(COMMAND_PREFIX):
            ctx = CommandContext(identity=identity, display_name=name, tier=tier)
            reply = await self.handle_command(ctx, text)
            if reply is not None:
                await self._audit(identity, name, Direction.OUT, reply[:AUDIT_COMMAND_REPLY_CHARS])
                return reply

        rejection = self.security_check(text, tier)
        if rejection:
            return f"⚠️ {rejection}"

        friend = await self._get_friend(identity)
        agent_name = friend.name if friend else name
        dispatch = await self.executor.execute(identity, agent_name, tier, text)

        await self._audit(
            identity,
            name,
            Direction.OUT,
            dispatch.text[:AUDIT_AGENT_REPLY_CHARS],
            dispatch.session_token,
        )
        logger.info(f"Reply to {name}: {dispatch.text[:100]}", extra={"identity": identity})
        return dispatch.text

    # =========================================================================
    # Authorization
    # =========================================================================

    async def effective_tier(self, identity: str) -> Optional[PermissionTier]:
        """Admin identity, else the granted tier, else the configured default.

        None means unauthorized (the default tier is empty or unknown).
        """
        if identity == self.admin_id:
            return PermissionTier.ADMIN
        friend = await self._get_friend(identity)
        if friend and friend.tier is not None:
            return friend.tier
        return parse_tier(self.settings.permissions.default_level)

    def security_check(self, text: str, tier: PermissionTier) -> Optional[str]:
        """Return a rejection reason if a blocked pattern matches."""
        if tier >= PermissionTier.ADMIN:
            return None
        for pattern in self._blocked_patterns:
            if pattern.search(text):
                logger.warning(f"Blocked pattern {pattern.pattern!r} matched")
                return user_message(ErrorCode.BLOCKED_CONTENT)
        return None

    async def _ensure_registered(self, identity: str, display_name: str, remark_name: str) -> None:
        nickname = display_name or None
        remark = remark_name or None
        try:
            existing = await self.database.get_friend(identity)
            if existing:
                if existing.display_name != nickname or existing.remark_name != remark:
                    await self.database.upsert_friend(identity, nickname, remark)
                return

            if identity == self.admin_id:
                tier = PermissionTier.ADMIN
            else:
                tier = parse_tier(self.settings.permissions.default_level)
            await self.database.upsert_friend(identity, nickname, remark, tier)
            logger.info(f"Registered new friend {remark or nickname or identity} ({identity})")
        except Exception as e:
            logger.warning(f"Failed to register {identity}: {e}")

    async def _get_friend(self, identity: str) -> Optional[Friend]:
        try:
            return await self.database.get_friend(identity)
        except Exception as e:
            logger.warning(f"Friend lookup failed for {identity}: {e}")
            return None

    async def _audit(
        self,
        identity: str,
        name: str,
        direction: Direction,
        message: str,
        session_token: Optional[str] = None,
    ) -> None:
        try:
            await self.database.append_audit(identity, name, direction, message, session_token)
        except Exception as e:
            logger.warning(f"Audit write failed for {identity}: {e}")

    # =========================================================================
    # Commands
    # =========================================================================

    async def handle_command(self, ctx: CommandContext, text: str) -> Optional[str]:
        """Run a known command. Returns None for unknown commands."""
        parts = text.strip().split(maxsplit=1)
        name = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        spec = COMMANDS.get(name)
        if spec is None:
            return None
        if ctx.tier < spec.min_tier:
            return f"❌ {user_message(ErrorCode.INSUFFICIENT_PERMISSION)}"

        handler: Callable[[CommandContext, str], Awaitable[str]] = getattr(self, spec.handler)
        try:
            return await handler(ctx, args)
        except Exception as e:
            logger.error(f"Command {name} failed: {e}", exc_info=True)
            return f"❌ {name} failed, please check the logs"

    async def _resolve_target(self, query: str, usage: str) -> tuple[Optional[Friend], Optional[str]]:
        """Find exactly one friend by id or name substring, or explain why not."""
        if not query:
            return None, f"Usage: {usage}"

        friend = await self.database.get_friend(query)
        if friend:
            return friend, None

        matches = await self.database.find_friends(query)
        if not matches:
            return None, f'❌ No friend matching "{query}" (they must send a message first)'
        if len(matches) > 1:
            candidates = "\n".join(
                f"  {f.name} ({f.id}) [{f.tier.value if f.tier else 'default'}]" for f in matches
            )
            return None, f"Multiple matches:\n{candidates}\nPlease be more specific"
        return matches[0], None

    async def _cmd_help(self, ctx: CommandContext, args: str) -> str:
        lines = ["📖 Commands:"]
        for name, spec in COMMANDS.items():
            if ctx.tier >= spec.min_tier:
                lines.append(f"{name} - {spec.description}")
        lines.append("")
        lines.append("Any other message goes to Claude.")
        return "\n".join(lines)

    async def _cmd_status(self, ctx: CommandContext, args: str) -> str:
        session = await self.database.get_active_session(ctx.identity)
        status = await self.executor.get_container_status(ctx.identity)

        if session:
            session_info = (
                f"active ({session.message_count} messages, "
                f"last {session.last_active.strftime('%Y-%m-%d %H:%M')} UTC)"
            )
        else:
            session_info = "none"

        lines = [
            f"👤 {ctx.display_name}",
            f"🔑 Permission: {ctx.tier.value}",
            f"💬 Session: {session_info}",
            f"🐳 Container: {status.name} ({'running' if status.running else 'stopped'})",
        ]
        if status.stats:
            lines.append(f"   CPU: {status.stats.cpu_percent:.1f}%")
            lines.append(
                f"   Memory: {format_bytes(status.stats.memory_usage)} / "
                f"{format_bytes(status.stats.memory_limit)}"
            )
            lines.append(f"   Processes: {status.stats.pids}")
        if status.disk_usage:
            lines.append(f"   Disk: {status.disk_usage}")
        return "\n".join(lines)

    async def _cmd_clear(self, ctx: CommandContext, args: str) -> str:
        await self.executor.clear_session(ctx.identity)
        return "🗑️ Session cleared, your next message starts a new conversation"

    async def _cmd_allow(self, ctx: CommandContext, args: str) -> str:
        usage = "/allow <name> [trusted|normal|admin]"
        query, tier = args, PermissionTier.TRUSTED
        parts = args.rsplit(maxsplit=1)
        if len(parts) == 2:
            requested = parse_tier(parts[1])
            if requested is not None:
                if requested not in GRANTABLE_TIERS:
                    return f"❌ Invalid level {parts[1]!r}, use /block to block someone"
                query, tier = parts[0], requested

        friend, error = await self._resolve_target(query, usage)
        if error:
            return error
        await self.database.set_friend_tier(friend.id, tier)
        logger.info(f"{ctx.identity} set {friend.id} to {tier.value}")
        return f"✅ {friend.name} → {tier.value}"

    async def _cmd_block(self, ctx: CommandContext, args: str) -> str:
        friend, error = await self._resolve_target(args, "/block <name>")
        if error:
            return error
        if friend.id == self.admin_id:
            return "❌ The admin cannot be blocked"
        await self.database.set_friend_tier(friend.id, PermissionTier.BLOCKED)
        await self.executor.destroy_container(friend.id)
        logger.warning(f"{ctx.identity} blocked {friend.id}")
        return f"🚫 Blocked {friend.name}, container destroyed"

    async def _cmd_list(self, ctx: CommandContext, args: str) -> str:
        friends = await self.database.list_friends()
        if not friends:
            return "No friends registered yet"

        lines = ["👥 Friends:", ""]
        for tier in sorted(PermissionTier, reverse=True):
            group = [f for f in friends if f.tier == tier]
            if group:
                lines.append(f"{_TIER_ICONS[tier]} {tier.value.upper()}:")
                lines.extend(f"  {f.name}" for f in group)
                lines.append("")
        pending = [f for f in friends if f.tier is None]
        if pending:
            lines.append("⏳ PENDING:")
            lines.extend(f"  {f.name} ({f.id})" for f in pending)
            lines.append("")
        return "\n".join(lines).rstrip()

    async def _cmd_logs(self, ctx: CommandContext, args: str) -> str:
        if not args:
            return format_logs(await self.database.get_recent_audit(LOG_LINES))
        friend, error = await self._resolve_target(args, "/logs [name]")
        if error:
            return error
        return format_logs(await self.database.get_audit_for(friend.id, LOG_LINES))

    async def _cmd_kill(self, ctx: CommandContext, args: str) -> str:
        friend, error = await self._resolve_target(args, "/kill <name>")
        if error:
            return error
        if await self.executor.kill_process(friend.id):
            return f"✅ Killed running processes of {friend.name}"
        return f"❌ Could not kill processes of {friend.name}"

    async def _cmd_containers(self, ctx: CommandContext, args: str) -> str:
        containers = await self.executor.list_containers()
        if not containers:
            return "🐳 No containers"

        lines = ["🐳 Containers:", ""]
        for info in containers:
            friend = await self._get_friend(info.identity) if info.identity else None
            name = friend.name if friend else (info.identity or "unknown")
            icon = "✅" if info.running else "⏹️"
            tier = info.tier.value if info.tier else "?"
            lines.append(f"{icon} {name} [{tier}]")
            lines.append(f"   {info.name}: {info.status}")
        return "\n".join(lines)

    async def _cmd_restart(self, ctx: CommandContext, args: str) -> str:
        friend, error = await self._resolve_target(args, "/restart <name>")
        if error:
            return error
        await self.executor.stop_container(friend.id)
        await self.executor.clear_session(friend.id)
        return f"🔄 Stopped {friend.name}'s container and cleared the session, it starts again on the next message"

    async def _cmd_destroy(self, ctx: CommandContext, args: str) -> str:
        friend, error = await self._resolve_target(args, "/destroy <name>")
        if error:
            return error
        await self.executor.destroy_container(friend.id)
        return f"💥 Destroyed {friend.name}'s container (data kept)"

    async def _cmd_rebuild(self, ctx: CommandContext, args: str) -> str:
        friend, error = await self._resolve_target(args, "/rebuild <name>")
        if error:
            return error
        tier = await self.effective_tier(friend.id)
        if tier is None or tier == PermissionTier.BLOCKED:
            return f"❌ {friend.name} has no access, nothing to rebuild"
        await self.executor.rebuild_container(friend.id, tier)
        return f"🔨 Rebuilt {friend.name}'s container"

    async def _cmd_stopall(self, ctx: CommandContext, args: str) -> str:
        stopped = await self.executor.stop_all()
        return f"⏹️ Stopped {stopped} container(s)"
