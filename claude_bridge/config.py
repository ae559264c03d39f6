"""
Configuration management for Claude Bridge.

Precedence: env vars > .env file > config.yaml > defaults

Environment variables use the BRIDGE_ prefix with "__" for nested sections,
e.g. BRIDGE_DOCKER__IMAGE or BRIDGE_RATE_LIMIT__MAX_PER_DAY. The Anthropic
key is read from ANTHROPIC_API_KEY directly.

The loaded Settings value is handed to each component's constructor;
nothing looks configuration up globally.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from claude_bridge.lib.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config.yaml"

_MEMORY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([bkmg]?)b?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_memory(value: Any) -> int:
    """Parse a memory size like '512m', '2g' or '1048576' into bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid memory size: {value!r}")
    if isinstance(value, int):
        return value
    match = _MEMORY_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid memory size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.lower()])


class ResourceLimits(BaseModel):
    """Per-container resource ceilings. Admin identities get the elevated values."""

    memory: int = Field(default=512 * 1024**2, description="Memory limit in bytes")
    admin_memory: int = Field(default=2 * 1024**3, description="Admin memory limit in bytes")
    cpus: float = Field(default=1.0, gt=0, description="CPU share (cores)")
    admin_cpus: float = Field(default=2.0, gt=0, description="Admin CPU share (cores)")
    pids: int = Field(default=100, gt=0, description="Process count cap")
    tmp_size: int = Field(default=100 * 1024**2, description="tmpfs /tmp size in bytes")

    @field_validator("memory", "admin_memory", "tmp_size", mode="before")
    @classmethod
    def _parse_sizes(cls, v: Any) -> int:
        return parse_memory(v)


class NetworkProfiles(BaseModel):
    """Docker network used for each permission tier."""

    admin: str = "bridge"
    trusted: str = "claude-limited"
    normal: str = "none"


class DockerSettings(BaseModel):
    image: str = "claude-sandbox:latest"
    container_prefix: str = "claude-friend-"
    data_dir: Path = Field(
        default=Path("~/claude-bridge-data"),
        description="Host directory holding per-user workspace volumes",
    )
    socket: Path = Field(
        default=Path("/var/run/docker.sock"),
        description="Docker engine unix socket, used for raw stats",
    )
    build_dir: Path = Field(
        default=Path("."),
        description="Build context containing Dockerfile.sandbox",
    )
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network: NetworkProfiles = Field(default_factory=NetworkProfiles)

    @field_validator("data_dir", mode="after")
    @classmethod
    def _expand_data_dir(cls, v: Path) -> Path:
        return v.expanduser()


class ClaudeSettings(BaseModel):
    timeout: int = Field(default=120, gt=0, description="Agent execution timeout in seconds")


class PermissionSettings(BaseModel):
    default_level: str = Field(
        default="normal",
        description="Tier for unregistered users; empty or unknown means unauthorized",
    )
    notify_unauthorized: bool = True
    unauthorized_message: str = "Sorry, you are not authorized to use this service."

    @field_validator("default_level", mode="before")
    @classmethod
    def _normalize_level(cls, v: Any) -> str:
        return str(v or "").strip().lower()


class SessionSettings(BaseModel):
    expire_minutes: int = Field(default=60, ge=0)


class RateLimitSettings(BaseModel):
    max_per_minute: int = Field(default=10, ge=0)
    max_per_day: int = Field(default=200, ge=0)


class SecuritySettings(BaseModel):
    blocked_patterns: list[str] = Field(
        default_factory=list,
        description="Case-insensitive regexes rejected for non-admin users",
    )

    @field_validator("blocked_patterns")
    @classmethod
    def _check_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"Invalid blocked pattern {pattern!r}: {e}") from e
        return v

    def compile_patterns(self) -> list[re.Pattern[str]]:
        return [re.compile(p, re.IGNORECASE) for p in self.blocked_patterns]


class LoggingSettings(BaseModel):
    level: str = "info"
    file: Optional[Path] = Path("logs/bridge.log")
    log_message_content: bool = True


class TelegramSettings(BaseModel):
    bot_token: str = ""
    max_message_length: int = Field(default=4000, gt=0)


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765


class Settings(BaseSettings):
    """Bridge configuration. Precedence: env vars > .env > config.yaml > defaults."""

    admin_id: str = Field(min_length=1, description="Identity that is always Admin")
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "anthropic_api_key"),
        description="Passed into containers; omitted entirely when unset",
    )
    db_path: Path = Field(default=Path("data/bridge.db"), description="SQLite database path")
    transport: Literal["stdin", "telegram"] = "stdin"

    docker: DockerSettings = Field(default_factory=DockerSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = {
        "env_prefix": "BRIDGE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # config.yaml arrives as init kwargs, so it must rank below env and .env
        return env_settings, dotenv_settings, init_settings, file_secret_settings


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Resolve the config file: explicit path, then $BRIDGE_CONFIG, then ./config.yaml."""
    if path:
        return Path(path).expanduser()
    raw = os.environ.get("BRIDGE_CONFIG", "")
    if raw:
        return Path(raw).expanduser()
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _load_yaml_config(config_file: Path) -> dict[str, Any]:
    """Load config.yaml. Missing or malformed files are fatal."""
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_file}")
    try:
        with open(config_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping, got {type(data).__name__}")
    return data


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load and validate settings from config.yaml plus environment."""
    config_file = resolve_config_path(path)
    data = _load_yaml_config(config_file)
    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_file}:\n{e}") from e
    logger.info(f"Configuration loaded from {config_file}")
    return settings
