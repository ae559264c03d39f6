"""
Container engine models.
"""

from typing import Optional

from pydantic import BaseModel, Field

from claude_bridge.models.tier import PermissionTier


class ExecResult(BaseModel):
    """Result of running a command inside a container."""

    ok: bool
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class ContainerStats(BaseModel):
    """Single-shot resource usage sample."""

    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    pids: int = 0


class ContainerInfo(BaseModel):
    """A managed container as reported by the engine listing."""

    name: str
    identity: Optional[str] = Field(default=None, description="Recovered from labels")
    tier: Optional[PermissionTier] = Field(default=None, description="Recovered from labels")
    state: str = ""
    status: str = ""

    @property
    def running(self) -> bool:
        return self.state == "running"


class ContainerStatus(BaseModel):
    """Status snapshot of one identity's container."""

    name: str
    running: bool
    stats: Optional[ContainerStats] = None
    disk_usage: Optional[str] = None
