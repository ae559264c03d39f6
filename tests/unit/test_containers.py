"""
Tests for the container manager.

Nothing here talks to a real Docker engine; process creation is replaced
with a fake where a call has to happen.
"""

import asyncio
from unittest.mock import patch

import pytest

from claude_bridge.core.containers import (
    API_KEY_ENV,
    EMPTY_OUTPUT_PLACEHOLDER,
    ContainerManager,
    calculate_cpu_percent,
    parse_container_list,
    parse_stats,
    sanitize_identity,
)
from claude_bridge.models.tier import PermissionTier


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, delay: float = 0):
        self._stdout = stdout
        self._stderr = stderr
        self._final_returncode = returncode
        self._delay = delay
        self.returncode = None
        self.killed = False
        self.waited = False

    async def communicate(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        self.returncode = self._final_returncode
        return self._stdout, self._stderr

    async def wait(self):
        self.waited = True
        self.returncode = self._final_returncode
        return self.returncode

    def kill(self):
        self.killed = True


@pytest.fixture
def manager(settings) -> ContainerManager:
    return ContainerManager(settings.docker)


def _flag_value(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


class TestNaming:
    def test_plain_identity(self, manager):
        assert manager.container_name("alice") == "claude-friend-alice"

    def test_disallowed_characters_replaced(self, manager):
        assert manager.container_name("wx@id#1") == "claude-friend-wx_id_1"

    def test_length_preserved(self):
        identity = "用户:42/x"
        assert len(sanitize_identity(identity)) == len(identity)

    def test_deterministic(self, manager):
        assert manager.container_name("a b") == manager.container_name("a b")

    def test_allowed_punctuation_kept(self):
        assert sanitize_identity("a.b-c_d") == "a.b-c_d"

    def test_user_data_dir_uses_safe_name(self, manager, settings):
        assert manager.user_data_dir("a/b") == settings.docker.data_dir / "a_b"


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    def _sample(self, total, pre_total, system, pre_system, cpus=2):
        return {
            "cpu_stats": {
                "cpu_usage": {"total_usage": total},
                "system_cpu_usage": system,
                "online_cpus": cpus,
            },
            "precpu_stats": {
                "cpu_usage": {"total_usage": pre_total},
                "system_cpu_usage": pre_system,
            },
            "memory_stats": {"usage": 1024, "limit": 4096},
            "pids_stats": {"current": 7},
        }

    def test_cpu_percent(self):
        sample = self._sample(total=200, pre_total=100, system=2000, pre_system=1000)
        assert calculate_cpu_percent(sample) == pytest.approx(20.0)

    def test_cpu_percent_zero_deltas(self):
        assert calculate_cpu_percent(self._sample(100, 100, 2000, 1000)) == 0.0
        assert calculate_cpu_percent(self._sample(200, 100, 1000, 1000)) == 0.0

    def test_cpu_percent_empty_sample(self):
        assert calculate_cpu_percent({}) == 0.0

    def test_parse_stats(self):
        stats = parse_stats(self._sample(200, 100, 2000, 1000))
        assert stats.memory_usage == 1024
        assert stats.memory_limit == 4096
        assert stats.pids == 7


# ---------------------------------------------------------------------------
# Run arguments
# ---------------------------------------------------------------------------


class TestRunArgs:
    def test_normal_tier_profile(self, manager):
        args = manager._build_run_args("u1", PermissionTier.NORMAL)
        assert _flag_value(args, "--name") == "claude-friend-u1"
        assert _flag_value(args, "--network") == "none"
        assert _flag_value(args, "--memory") == str(512 * 1024**2)
        assert _flag_value(args, "--memory-swap") == _flag_value(args, "--memory")
        assert _flag_value(args, "--cpus") == "1"
        assert _flag_value(args, "--pids-limit") == "100"
        assert "--read-only" in args
        assert _flag_value(args, "--cap-drop") == "ALL"
        assert args[-3:] == ["tail", "-f", "/dev/null"]

    def test_trusted_tier_network(self, manager):
        args = manager._build_run_args("u1", PermissionTier.TRUSTED)
        assert _flag_value(args, "--network") == "claude-limited"

    def test_admin_tier_profile(self, manager):
        args = manager._build_run_args("admin", PermissionTier.ADMIN)
        assert _flag_value(args, "--network") == "bridge"
        assert _flag_value(args, "--memory") == str(2 * 1024**3)
        assert _flag_value(args, "--cpus") == "2"

    def test_labels(self, manager):
        args = manager._build_run_args("u1", PermissionTier.TRUSTED)
        labels = [args[i + 1] for i, a in enumerate(args) if a == "--label"]
        assert labels == ["app=claude-bridge", "identity=u1", "tier=trusted"]

    def test_volumes_under_data_dir(self, manager, settings):
        args = manager._build_run_args("u1", PermissionTier.NORMAL)
        volumes = [args[i + 1] for i, a in enumerate(args) if a == "-v"]
        base = settings.docker.data_dir / "u1"
        assert volumes == [
            f"{base / 'workspace'}:/home/sandbox/workspace",
            f"{base / 'claude-config'}:/home/sandbox/.claude",
        ]

    def test_api_key_omitted_when_unset(self, manager):
        args = manager._build_run_args("u1", PermissionTier.NORMAL)
        assert API_KEY_ENV not in args
        assert manager._client_env() is None

    def test_api_key_passed_by_name_only(self, settings):
        manager = ContainerManager(settings.docker, "sk-secret")
        args = manager._build_run_args("u1", PermissionTier.NORMAL)
        assert API_KEY_ENV in args
        assert not any("sk-secret" in a for a in args)
        assert manager._client_env()[API_KEY_ENV] == "sk-secret"


# ---------------------------------------------------------------------------
# Agent command
# ---------------------------------------------------------------------------


class TestAgentCommand:
    def test_normal_tier_disables_tools(self, manager):
        cmd = manager._build_agent_command("hi", "prompt", None, PermissionTier.NORMAL)
        assert cmd == [
            "claude", "--print", "--output-format", "text",
            "--system-prompt", "prompt",
            "--allowedTools", "",
            "hi",
        ]

    def test_resume_token(self, manager):
        cmd = manager._build_agent_command("hi", "prompt", "abc-123", PermissionTier.TRUSTED)
        assert _flag_value(cmd, "--resume") == "abc-123"
        assert "--allowedTools" not in cmd
        assert cmd[-1] == "hi"


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class TestParseContainerList:
    def test_parses_labels(self):
        output = (
            "claude-friend-u1\trunning\tUp 5 minutes\tu1\tnormal\n"
            "claude-friend-admin\texited\tExited (0) 1 hour ago\tadmin\tadmin\n"
        )
        containers = parse_container_list(output)
        assert [c.name for c in containers] == ["claude-friend-u1", "claude-friend-admin"]
        assert containers[0].running is True
        assert containers[0].identity == "u1"
        assert containers[0].tier == PermissionTier.NORMAL
        assert containers[1].running is False
        assert containers[1].tier == PermissionTier.ADMIN

    def test_missing_labels(self):
        containers = parse_container_list("claude-friend-x\tcreated\tCreated\n\n")
        assert len(containers) == 1
        assert containers[0].identity is None
        assert containers[0].tier is None


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    async def _execute(self, manager, proc: FakeProcess, timeout: float = 5.0):
        async def fake_exec(*args, **kwargs):
            fake_exec.args = args
            return proc

        with patch("claude_bridge.core.containers.asyncio.create_subprocess_exec", fake_exec):
            result = await manager.execute(
                "u1", "hello",
                system_prompt="prompt",
                timeout=timeout,
                tier=PermissionTier.NORMAL,
            )
        return result, fake_exec.args

    @pytest.mark.asyncio
    async def test_success(self, manager):
        result, args = await self._execute(manager, FakeProcess(stdout=b"  answer\n"))
        assert result.ok is True
        assert result.stdout == "answer"
        assert args[:6] == ("docker", "exec", "-u", "sandbox", "-w", "/home/sandbox/workspace")
        assert "claude-friend-u1" in args

    @pytest.mark.asyncio
    async def test_empty_output_placeholder(self, manager):
        result, _ = await self._execute(manager, FakeProcess(stdout=b"\n"))
        assert result.ok is True
        assert result.stdout == EMPTY_OUTPUT_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_failure_without_output(self, manager):
        result, _ = await self._execute(manager, FakeProcess(stderr=b"boom", returncode=1))
        assert result.ok is False
        assert result.timed_out is False
        assert result.stderr == "boom"

    @pytest.mark.asyncio
    async def test_failure_with_output_is_kept(self, manager):
        result, _ = await self._execute(manager, FakeProcess(stdout=b"partial", returncode=1))
        assert result.ok is True
        assert result.stdout == "partial"

    @pytest.mark.asyncio
    async def test_timeout_kills_client(self, manager):
        proc = FakeProcess(stdout=b"late", delay=10)
        result, _ = await self._execute(manager, proc, timeout=0.05)
        assert result.ok is False
        assert result.timed_out is True
        assert proc.killed is True
        assert proc.waited is True

    @pytest.mark.asyncio
    async def test_spawn_failure(self, manager):
        async def failing_exec(*args, **kwargs):
            raise FileNotFoundError("docker")

        with patch("claude_bridge.core.containers.asyncio.create_subprocess_exec", failing_exec):
            result = await manager.execute(
                "u1", "hello", system_prompt="p", timeout=1, tier=PermissionTier.NORMAL
            )
        assert result.ok is False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestEnsureContainer:
    @pytest.mark.asyncio
    async def test_running_container_is_reused(self, manager):
        calls = []

        async def fake_exec(*args, **kwargs):
            calls.append(args)
            return FakeProcess(stdout=b"running\n")

        with patch("claude_bridge.core.containers.asyncio.create_subprocess_exec", fake_exec):
            name = await manager.ensure_container("u1", PermissionTier.NORMAL)

        assert name == "claude-friend-u1"
        assert len(calls) == 1
        assert calls[0][:2] == ("docker", "inspect")

    @pytest.mark.asyncio
    async def test_exited_container_is_started(self, manager):
        calls = []

        async def fake_exec(*args, **kwargs):
            calls.append(args)
            if args[1] == "inspect":
                return FakeProcess(stdout=b"exited\n")
            return FakeProcess()

        with patch("claude_bridge.core.containers.asyncio.create_subprocess_exec", fake_exec):
            await manager.ensure_container("u1", PermissionTier.NORMAL)

        assert calls[1] == ("docker", "start", "claude-friend-u1")

    @pytest.mark.asyncio
    async def test_missing_container_is_created(self, manager, settings):
        calls = []

        async def fake_exec(*args, **kwargs):
            calls.append(args)
            if args[1] == "inspect":
                return FakeProcess(returncode=1)
            return FakeProcess()

        with patch("claude_bridge.core.containers.asyncio.create_subprocess_exec", fake_exec):
            await manager.ensure_container("u1", PermissionTier.NORMAL)

        assert calls[1][:3] == ("docker", "run", "-d")
        assert (settings.docker.data_dir / "u1" / "workspace").is_dir()
        assert (settings.docker.data_dir / "u1" / "claude-config").is_dir()
        assert calls[2][:5] == ("docker", "exec", "-u", "root", "claude-friend-u1")
