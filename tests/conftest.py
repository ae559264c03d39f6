"""
Shared test fixtures.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from claude_bridge.config import Settings
from claude_bridge.core.containers import ContainerManager
from claude_bridge.db.database import Database
from claude_bridge.models.container import ExecResult


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host environment from leaking into Settings."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("BRIDGE_CONFIG", raising=False)


@pytest.fixture
def make_settings(tmp_path: Path):
    """Factory for Settings with test-friendly paths."""

    def _make(**overrides) -> Settings:
        values = {
            "admin_id": "admin",
            "db_path": tmp_path / "bridge.db",
            "docker": {"data_dir": tmp_path / "data"},
            "logging": {"file": None},
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def test_database(tmp_path: Path):
    """Connected database in a temporary directory."""
    db = Database(tmp_path / "test.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def mock_containers() -> MagicMock:
    """ContainerManager double whose engine calls all succeed."""
    containers = MagicMock(spec=ContainerManager)
    containers.container_name.side_effect = lambda identity: f"claude-friend-{identity}"
    containers.ensure_container.side_effect = lambda identity, tier: f"claude-friend-{identity}"
    containers.execute.return_value = ExecResult(ok=True, stdout="Hello from Claude")
    containers.exec.return_value = ExecResult(ok=True)
    containers.stop.return_value = True
    containers.destroy.return_value = True
    containers.rebuild.side_effect = lambda identity, tier: f"claude-friend-{identity}"
    containers.stop_all.return_value = 0
    containers.list_containers.return_value = []
    containers.is_running.return_value = False
    containers.stats.return_value = None
    return containers

