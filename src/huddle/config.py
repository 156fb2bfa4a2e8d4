"""Server configuration for huddle.

Settings are resolved in three layers, later layers winning:

1. Dataclass defaults
2. A YAML file (``--config`` on the CLI, or ``HUDDLE_CONFIG``)
3. Environment variables (``HUDDLE_*``)

Example config.yaml:

    db_path: /var/lib/huddle/chat.db
    upload_dir: /var/lib/huddle/uploads
    max_message_length: 1000
    history_page_size: 20
    cors_origins:
      - http://localhost:3000
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml


class ConfigError(Exception):
    """Raised when settings are invalid."""

    pass


DEFAULT_DB_PATH = ":memory:"
DEFAULT_UPLOAD_DIR = "uploads"

# env var -> (field name, parser)
_ENV_OVERRIDES: dict[str, tuple[str, Any]] = {
    "HUDDLE_DB": ("db_path", str),
    "HUDDLE_UPLOAD_DIR": ("upload_dir", str),
    "HUDDLE_PUBLIC_URL": ("public_url", str),
    "HUDDLE_MAX_MESSAGE_LENGTH": ("max_message_length", int),
    "HUDDLE_PAGE_SIZE": ("history_page_size", int),
    "HUDDLE_MAX_PAGE_SIZE": ("max_page_size", int),
    "HUDDLE_SEND_TIMEOUT": ("send_timeout", float),
    "HUDDLE_SESSION_TTL_HOURS": ("session_ttl_hours", int),
    "HUDDLE_MAX_UPLOAD_BYTES": ("max_upload_bytes", int),
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_config_path() -> Path | None:
    """Get the config file path from the environment, if any."""
    path = os.environ.get("HUDDLE_CONFIG")
    return Path(path) if path else None


@dataclass
class ServerSettings:
    """Runtime settings for the chat server."""

    db_path: str = DEFAULT_DB_PATH
    upload_dir: str = DEFAULT_UPLOAD_DIR
    public_url: str = ""
    """Prefix for upload URLs. Empty means relative URLs (/uploads/...)."""

    no_auth: bool = False
    """Skip bearer-token checks. Development only."""

    max_message_length: int = 1000
    history_page_size: int = 20
    max_page_size: int = 100
    search_limit: int = 50
    send_timeout: float = 5.0
    """Seconds to wait on a single connection before counting it as failed."""

    session_ttl_hours: int = 24 * 7
    max_upload_bytes: int = 10 * 1024 * 1024
    cors_origins: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if self.max_message_length <= 0:
            raise ConfigError("max_message_length must be positive")
        if self.history_page_size <= 0:
            raise ConfigError("history_page_size must be positive")
        if self.max_page_size < self.history_page_size:
            raise ConfigError("max_page_size must be >= history_page_size")
        if self.send_timeout <= 0:
            raise ConfigError("send_timeout must be positive")
        if self.max_upload_bytes <= 0:
            raise ConfigError("max_upload_bytes must be positive")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerSettings":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "ServerSettings":
        """Load settings from an optional YAML file plus environment overrides."""
        data: dict[str, Any] = {}

        config_path = Path(path) if path else get_config_path()
        if config_path is not None:
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_path}")
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Config file must contain a mapping: {config_path}")
            data.update(loaded)

        for env_name, (field_name, parser) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                data[field_name] = parser(raw)
            except ValueError as e:
                raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e

        if "HUDDLE_NO_AUTH" in os.environ:
            data["no_auth"] = _parse_bool(os.environ["HUDDLE_NO_AUTH"])

        origins = os.environ.get("HUDDLE_CORS_ORIGINS")
        if origins:
            data["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]

        return cls.from_dict(data)

    def save(self, path: str | Path) -> None:
        """Write settings to a YAML file."""
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)


_settings: ServerSettings | None = None


def get_settings() -> ServerSettings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = ServerSettings.load()
    return _settings


def set_settings(settings: ServerSettings) -> None:
    """Replace the process-wide settings (CLI and tests)."""
    global _settings
    _settings = settings


def reset_settings() -> None:
    """Forget cached settings so the next get_settings() reloads them."""
    global _settings
    _settings = None
