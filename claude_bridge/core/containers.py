"""
Per-user Docker containers for agent execution.

Every chat identity owns exactly one long-lived container, named
deterministically from the identity so no lookup table is needed:

    claude-friend-<identity with disallowed characters replaced by "_">

Containers are created on first use with a resource and network profile
chosen by the identity's permission tier, keep running between messages
("tail -f /dev/null" keep-alive), and bind-mount two host directories that
survive destroy/rebuild:

    <data_dir>/<safe identity>/workspace      -> /home/sandbox/workspace
    <data_dir>/<safe identity>/claude-config  -> /home/sandbox/.claude

All engine interaction goes through the docker CLI, except raw resource
stats which are read from the engine API over its unix socket.
"""

import asyncio
import logging
import os
import re
import shutil
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import httpx

from claude_bridge.config import DockerSettings
from claude_bridge.lib.errors import ContainerError, DockerUnavailableError
from claude_bridge.models.container import ContainerInfo, ContainerStats, ExecResult
from claude_bridge.models.tier import PermissionTier, parse_tier

logger = logging.getLogger(__name__)

APP_LABEL = "claude-bridge"
IDENTITY_ENV = "BRIDGE_IDENTITY"
API_KEY_ENV = "ANTHROPIC_API_KEY"

SANDBOX_USER = "sandbox"
CONTAINER_WORKSPACE = "/home/sandbox/workspace"
CONTAINER_CLAUDE_DIR = "/home/sandbox/.claude"
SANDBOX_DOCKERFILE = "Dockerfile.sandbox"

EMPTY_OUTPUT_PLACEHOLDER = "(Claude returned no content)"

STOP_GRACE_SECONDS = 10
# How long to wait for a killed docker client to be reaped
KILL_WAIT_SECONDS = 5
# Networks provided by the engine itself; never created by us
BUILTIN_NETWORKS = frozenset({"bridge", "host", "none", "default"})

_DISALLOWED_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def sanitize_identity(identity: str) -> str:
    """Replace every character Docker rejects in names with "_".

    One character in, one character out, so the length is preserved.
    """
    return _DISALLOWED_NAME_CHARS.sub("_", identity)


def calculate_cpu_percent(stats: dict[str, Any]) -> float:
    """CPU usage from an engine stats sample.

    (cpu_delta / system_delta) * online_cpus * 100, or 0.0 whenever either
    delta is not positive.
    """
    cpu = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}

    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (
        precpu.get("cpu_usage") or {}
    ).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)

    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0

    online_cpus = cpu.get("online_cpus") or len(
        (cpu.get("cpu_usage") or {}).get("percpu_usage") or []
    ) or 1
    return (cpu_delta / system_delta) * online_cpus * 100.0


def parse_stats(stats: dict[str, Any]) -> ContainerStats:
    memory = stats.get("memory_stats") or {}
    pids = stats.get("pids_stats") or {}
    return ContainerStats(
        cpu_percent=calculate_cpu_percent(stats),
        memory_usage=memory.get("usage", 0),
        memory_limit=memory.get("limit", 0),
        pids=pids.get("current", 0),
    )


class ContainerManager:
    """Owns every interaction with the container engine."""

    # Re-check Docker availability every 60 seconds
    _CACHE_TTL = 60

    def __init__(self, settings: DockerSettings, anthropic_api_key: Optional[str] = None):
        self.settings = settings
        self.anthropic_api_key = anthropic_api_key or None
        self._docker_available: bool | None = None
        self._checked_at: float = 0
        # Per-container locks so two tasks never create the same container
        self._name_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # =========================================================================
    # Naming and profiles
    # =========================================================================

    def container_name(self, identity: str) -> str:
        return f"{self.settings.container_prefix}{sanitize_identity(identity)}"

    def user_data_dir(self, identity: str) -> Path:
        return self.settings.data_dir / sanitize_identity(identity)

    def _resources_for(self, tier: PermissionTier) -> tuple[int, float]:
        limits = self.settings.limits
        if tier == PermissionTier.ADMIN:
            return limits.admin_memory, limits.admin_cpus
        return limits.memory, limits.cpus

    def _network_for(self, tier: PermissionTier) -> str:
        network = self.settings.network
        if tier == PermissionTier.ADMIN:
            return network.admin
        if tier == PermissionTier.TRUSTED:
            return network.trusted
        return network.normal

    def _client_env(self) -> Optional[dict[str, str]]:
        """Environment for docker CLI calls.

        The API key is passed to containers by name only ("-e KEY"), so the
        CLI reads its value from here and it never shows up in argv.
        """
        if not self.anthropic_api_key:
            return None
        return {**os.environ, API_KEY_ENV: self.anthropic_api_key}

    def _env_args(self, identity: str) -> list[str]:
        args = ["-e", f"{IDENTITY_ENV}={identity}"]
        if self.anthropic_api_key:
            args.extend(["-e", API_KEY_ENV])
        return args

    # =========================================================================
    # Engine health and setup
    # =========================================================================

    async def is_available(self) -> bool:
        """Check if Docker is installed and running (cached with TTL)."""
        if (self._docker_available is not None
                and (time.time() - self._checked_at) < self._CACHE_TTL):
            return self._docker_available

        if not shutil.which("docker"):
            logger.warning("Docker not found in PATH")
            self._docker_available = False
            self._checked_at = time.time()
            return False

        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "info",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=5.0)
            self._docker_available = proc.returncode == 0
            self._checked_at = time.time()
            if not self._docker_available:
                logger.warning("Docker daemon not running")
            return self._docker_available
        except (asyncio.TimeoutError, OSError):
            logger.warning("Docker check timed out or failed")
            self._docker_available = False
            self._checked_at = time.time()
            return False

    async def health_check(self) -> str:
        """Return the engine version, raising DockerUnavailableError if unreachable."""
        if not shutil.which("docker"):
            raise DockerUnavailableError("docker CLI not found in PATH")
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "version", "--format", "{{.Server.Version}}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=10.0)
        except (asyncio.TimeoutError, OSError) as e:
            raise DockerUnavailableError(f"Docker engine check failed: {e}") from e
        if proc.returncode != 0:
            raise DockerUnavailableError(
                f"Docker engine not reachable: {stderr.decode(errors='replace').strip()}"
            )
        version = stdout.decode().strip()
        logger.info(f"Docker engine version {version}")
        return version

    async def image_exists(self) -> bool:
        """Check if the sandbox image is available locally."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "image", "inspect", self.settings.image,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await proc.wait()
        return proc.returncode == 0

    async def build_image(self) -> None:
        """Build the sandbox image from <build_dir>/Dockerfile.sandbox."""
        build_dir = self.settings.build_dir.expanduser().resolve()
        dockerfile = build_dir / SANDBOX_DOCKERFILE
        if not dockerfile.is_file():
            raise ContainerError(f"{SANDBOX_DOCKERFILE} not found in {build_dir}")

        logger.info(f"Building image {self.settings.image} from {dockerfile}")
        proc = await asyncio.create_subprocess_exec(
            "docker", "build",
            "-t", self.settings.image,
            "-f", str(dockerfile),
            str(build_dir),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        tail: list[str] = []
        assert proc.stdout is not None
        async for raw in proc.stdout:
            line = raw.decode(errors="replace").rstrip()
            if line:
                logger.debug(f"build: {line}")
                tail = (tail + [line])[-20:]
        await proc.wait()
        if proc.returncode != 0:
            raise ContainerError(
                f"Image build failed (exit {proc.returncode}):\n" + "\n".join(tail)
            )
        logger.info(f"Image {self.settings.image} built")

    async def init_networks(self) -> None:
        """Create the user-defined networks referenced by the tier profiles."""
        network = self.settings.network
        for name in {network.admin, network.trusted, network.normal} - BUILTIN_NETWORKS:
            proc = await asyncio.create_subprocess_exec(
                "docker", "network", "inspect", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
            if proc.returncode == 0:
                continue

            proc = await asyncio.create_subprocess_exec(
                "docker", "network", "create", "--driver", "bridge", name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
            if proc.returncode != 0:
                raise ContainerError(
                    f"Failed to create network {name}: {stderr.decode(errors='replace').strip()}"
                )
            logger.info(f"Created network {name}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _inspect_status(self, container_name: str) -> str | None:
        """Get container status via docker inspect. Returns None if not found."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "inspect", "-f", "{{.State.Status}}", container_name,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            return None
        return stdout.decode().strip()

    def _build_run_args(self, identity: str, tier: PermissionTier) -> list[str]:
        """Build docker run arguments for an identity's container."""
        name = self.container_name(identity)
        memory, cpus = self._resources_for(tier)
        data_dir = self.user_data_dir(identity)
        limits = self.settings.limits

        args = [
            "docker", "run", "-d",
            "--name", name,
            "--label", f"app={APP_LABEL}",
            "--label", f"identity={identity}",
            "--label", f"tier={tier.value}",
            "--memory", str(memory),
            "--memory-swap", str(memory),  # no swap
            "--cpus", f"{cpus:g}",
            "--pids-limit", str(limits.pids),
            # Security hardening
            "--read-only",
            "--tmpfs", f"/tmp:size={limits.tmp_size}",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--restart", "unless-stopped",
            "--network", self._network_for(tier),
            "-v", f"{data_dir / 'workspace'}:{CONTAINER_WORKSPACE}",
            "-v", f"{data_dir / 'claude-config'}:{CONTAINER_CLAUDE_DIR}",
        ]
        args.extend(self._env_args(identity))
        args.extend([self.settings.image, "tail", "-f", "/dev/null"])
        return args

    async def ensure_container(self, identity: str, tier: PermissionTier) -> str:
        """Ensure the identity's container is running; create if absent, start if stopped."""
        name = self.container_name(identity)
        async with self._name_locks[name]:
            status = await self._inspect_status(name)

            if status in ("running", "restarting"):
                return name
            elif status in ("exited", "created"):
                await self._start_container(name)
                return name
            elif status == "paused":
                await self._run_checked("docker", "unpause", name)
                return name
            elif status is not None:
                logger.warning(f"Container {name} in state {status!r}, recreating")
                await self._remove_container(name)

            data_dir = self.user_data_dir(identity)
            (data_dir / "workspace").mkdir(parents=True, exist_ok=True)
            (data_dir / "claude-config").mkdir(parents=True, exist_ok=True)

            proc = await asyncio.create_subprocess_exec(
                *self._build_run_args(identity, tier),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._client_env(),
            )
            _, stderr = await proc.communicate()
            if proc.returncode != 0:
                raise ContainerError(
                    f"Failed to create container {name}: {stderr.decode(errors='replace').strip()}"
                )
            logger.info(f"Created container {name} (tier={tier.value})")

            await self._fix_permissions(name)
            return name

    async def _fix_permissions(self, container_name: str) -> None:
        """Hand the bind-mounted directories to the sandbox user.

        Host-created directories belong to the host user; failure here is not
        fatal, the agent may still be able to work.
        """
        proc = await asyncio.create_subprocess_exec(
            "docker", "exec", "-u", "root", container_name,
            "chown", "-R", f"{SANDBOX_USER}:{SANDBOX_USER}",
            CONTAINER_WORKSPACE, CONTAINER_CLAUDE_DIR,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            logger.debug(
                f"Permission fix failed for {container_name}: "
                f"{stderr.decode(errors='replace').strip()}"
            )

    async def _start_container(self, container_name: str) -> None:
        """Start a stopped container."""
        await self._run_checked("docker", "start", container_name)

    async def _stop_container(self, container_name: str) -> bool:
        """Stop a running container with a grace period before the engine kills it."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "stop", "-t", str(STOP_GRACE_SECONDS), container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        try:
            await asyncio.wait_for(proc.wait(), timeout=STOP_GRACE_SECONDS + 5)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out stopping {container_name}")
            proc.kill()
            return False
        return proc.returncode == 0

    async def _remove_container(self, container_name: str) -> bool:
        """Force-remove a container. Bind-mounted host data is untouched."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "rm", "-f", container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await proc.wait()
        return proc.returncode == 0

    async def _run_checked(self, *args: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ContainerError(
                f"{' '.join(args[:2])} failed: {stderr.decode(errors='replace').strip()}"
            )

    async def stop(self, identity: str) -> bool:
        name = self.container_name(identity)
        stopped = await self._stop_container(name)
        if stopped:
            logger.info(f"Stopped container {name}")
        return stopped

    async def destroy(self, identity: str) -> bool:
        name = self.container_name(identity)
        removed = await self._remove_container(name)
        if removed:
            logger.info(f"Destroyed container {name}")
        return removed

    async def rebuild(self, identity: str, tier: PermissionTier) -> str:
        """Recreate the container from the current image, keeping its volumes."""
        await self.destroy(identity)
        return await self.ensure_container(identity, tier)

    # =========================================================================
    # Execution
    # =========================================================================

    def _build_agent_command(
        self,
        message: str,
        system_prompt: str,
        continuation_token: Optional[str],
        tier: PermissionTier,
    ) -> list[str]:
        cmd = [
            "claude", "--print",
            "--output-format", "text",
            "--system-prompt", system_prompt,
        ]
        if continuation_token:
            cmd.extend(["--resume", continuation_token])
        if tier == PermissionTier.NORMAL:
            # Q&A only
            cmd.extend(["--allowedTools", ""])
        cmd.append(message)
        return cmd

    async def execute(
        self,
        identity: str,
        message: str,
        *,
        system_prompt: str,
        timeout: float,
        tier: PermissionTier,
        continuation_token: Optional[str] = None,
    ) -> ExecResult:
        """Run the agent for one message as the sandbox user.

        On timeout the local docker client is killed and a timed-out result is
        returned; the agent process inside the container may keep running
        until it is killed explicitly.
        """
        name = self.container_name(identity)
        args = [
            "docker", "exec",
            "-u", SANDBOX_USER,
            "-w", CONTAINER_WORKSPACE,
            *self._env_args(identity),
            name,
            *self._build_agent_command(message, system_prompt, continuation_token, tier),
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._client_env(),
            )
        except OSError as e:
            logger.error(f"Failed to exec in {name}: {e}")
            return ExecResult(ok=False)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Agent in {name} timed out after {timeout}s")
            return ExecResult(ok=False, timed_out=True)
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(proc.wait(), timeout=KILL_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning(f"docker client for {name} did not exit after kill")

        out = stdout.decode("utf-8", errors="replace").strip()
        err = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0 and not out:
            logger.error(f"Agent in {name} exited {proc.returncode}: {err.strip()[:500]}")
            return ExecResult(ok=False, stderr=err)

        return ExecResult(ok=True, stdout=out or EMPTY_OUTPUT_PLACEHOLDER, stderr=err)

    async def exec(self, identity: str, command: str, as_root: bool = False) -> ExecResult:
        """Run a one-off shell command in the identity's container."""
        name = self.container_name(identity)
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker", "exec",
                "-u", "root" if as_root else SANDBOX_USER,
                name, "sh", "-c", command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.error(f"Failed to exec in {name}: {e}")
            return ExecResult(ok=False)
        return ExecResult(
            ok=proc.returncode == 0,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    # =========================================================================
    # Inspection
    # =========================================================================

    async def is_running(self, identity: str) -> bool:
        return await self._inspect_status(self.container_name(identity)) == "running"

    async def stats(self, identity: str) -> Optional[ContainerStats]:
        """Sample CPU, memory and process count from the engine API."""
        name = self.container_name(identity)
        transport = httpx.AsyncHTTPTransport(uds=str(self.settings.socket))
        try:
            async with httpx.AsyncClient(
                transport=transport, base_url="http://docker", timeout=10.0
            ) as client:
                response = await client.get(
                    f"/containers/{name}/stats", params={"stream": "false"}
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Stats unavailable for {name}: {e}")
            return None
        return parse_stats(data)

    async def list_containers(self) -> list[ContainerInfo]:
        """All containers carrying the bridge label, identity and tier from labels."""
        proc = await asyncio.create_subprocess_exec(
            "docker", "ps", "-a",
            "--filter", f"label=app={APP_LABEL}",
            "--format",
            '{{.Names}}\t{{.State}}\t{{.Status}}\t{{.Label "identity"}}\t{{.Label "tier"}}',
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ContainerError(
                f"Failed to list containers: {stderr.decode(errors='replace').strip()}"
            )
        return parse_container_list(stdout.decode(errors="replace"))

    async def stop_all(self) -> int:
        """Stop every running managed container. Returns how many stopped."""
        stopped = 0
        for info in await self.list_containers():
            if info.running and await self._stop_container(info.name):
                stopped += 1
        logger.info(f"Stopped {stopped} container(s)")
        return stopped

    async def cleanup(self) -> int:
        """Remove managed containers that are not running. Returns how many removed."""
        removed = 0
        for info in await self.list_containers():
            if info.state in ("exited", "created", "dead") and await self._remove_container(info.name):
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stopped container(s)")
        return removed


def parse_container_list(output: str) -> list[ContainerInfo]:
    """Parse the tab-separated docker ps output produced by list_containers."""
    containers = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        parts += [""] * (5 - len(parts))
        name, state, status, identity, tier = parts[:5]
        containers.append(ContainerInfo(
            name=name,
            state=state,
            status=status,
            identity=identity or None,
            tier=parse_tier(tier),
        ))
    return containers
