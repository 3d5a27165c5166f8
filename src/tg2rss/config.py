"""
tg2rss Configuration System.

Type-safe configuration built on Pydantic. Settings can be loaded from:
1. Environment variables (prefixed with TG2RSS_)
2. Config file (TOML or JSON)
3. CLI arguments (highest priority)

Example usage:
    from tg2rss.config import Settings

    # Load from environment
    settings = Settings()

    # Or with explicit values
    settings = Settings(
        feed_dir="./feeds",
        source={"channels": ["durov"]},
    )
"""

from __future__ import annotations

import json
import re
import tomllib
from pathlib import Path
from typing import Any, Self

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tg2rss.errors import ConfigError


# Maximum messages converted to feed entries in a single sync pass
BATCH_LIMIT = 10

USERNAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]{3,31}$")


def normalize_username(value: str) -> str:
    """Strip URL and @ decorations from a channel username."""
    value = value.strip()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    for prefix in ("t.me/s/", "t.me/"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.lstrip("@").strip("/")


def is_valid_username(value: str) -> bool:
    """Check a channel username against Telegram's naming rules."""
    return bool(USERNAME_PATTERN.match(value))


class SourceConfig(BaseModel):
    """Channel source (Telegram web preview) configuration."""

    base_url: str = Field(
        default="https://t.me",
        description="Base URL of the Telegram web preview",
    )
    channels: list[str] = Field(
        default_factory=list,
        description="Channel usernames to mirror",
    )
    subscriptions_file: Path = Field(
        default=Path("subscriptions.json"),
        description="File where channels added at runtime are persisted",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timeout for a single HTTP request",
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for transient HTTP failures",
    )
    max_retry_after_seconds: float = Field(
        default=60.0,
        ge=0,
        le=3600,
        description="Upper bound on waits requested by Retry-After",
    )
    user_agent: str = Field(
        default="tg2rss/1.0 (+https://t.me)",
        description="User-Agent header sent to the source",
    )

    @field_validator("channels", mode="before")
    @classmethod
    def split_channels(cls, v: Any) -> Any:
        """Accept a comma separated string."""
        if isinstance(v, str):
            v = [part for part in v.split(",") if part.strip()]
        return v

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: list[str]) -> list[str]:
        """Normalize and validate channel usernames."""
        names: list[str] = []
        for raw in v:
            name = normalize_username(raw)
            if not is_valid_username(name):
                raise ValueError(f"Invalid channel username: {raw!r}")
            if name.lower() not in {n.lower() for n in names}:
                names.append(name)
        return names


class SyncOptions(BaseModel):
    """Options controlling sync behavior."""

    batch_limit: int = Field(
        default=BATCH_LIMIT,
        ge=1,
        le=100,
        description="Maximum new messages captured per channel per pass",
    )
    interval_seconds: int = Field(
        default=300,
        ge=1,
        description="Seconds between periodic sync passes",
    )
    queue_capacity: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Capacity of the dispatcher command queue",
    )
    channel_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Time budget for syncing a single channel",
    )
    cursor_file: Path = Field(
        default=Path("db.json"),
        description="Path to the cursor store document",
    )


class ServerConfig(BaseModel):
    """HTTP read surface configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    feed_prefix: str = Field(
        default="/rss",
        pattern=r"^(/[A-Za-z0-9_\-]+)+/?$",
        description="URL prefix under which feed files are served",
    )


class LoggingConfig(BaseModel):
    """Logging for the service and the embedded HTTP server."""

    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Log level for tg2rss and uvicorn",
    )
    format: str = Field(
        default="rich",
        pattern="^(rich|json|simple)$",
        description="Console output: rich (colored), json lines, or simple",
    )
    access_log: bool = Field(
        default=False,
        description="Log every HTTP request served (feed readers poll a lot)",
    )
    file: Path | None = Field(
        default=None,
        description="Also write logs to this file, rotated by size",
    )
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    backup_count: int = Field(default=3, ge=1, le=10)

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> Any:
        """Accept `info` as well as `INFO`."""
        return v.upper() if isinstance(v, str) else v


class Settings(BaseSettings):
    """
    Main settings class for tg2rss.

    Settings are loaded in this priority (highest first):
    1. Explicit constructor arguments
    2. Environment variables (TG2RSS_* prefix)
    3. Config file (if specified)
    4. Defaults

    Example:
        # From environment
        export TG2RSS_FEED_DIR="/var/lib/tg2rss/feeds"
        export TG2RSS_SOURCE__CHANNELS='["durov", "telegram"]'
        settings = Settings()

        # From config file
        settings = Settings.from_file("config.toml")
    """

    model_config = SettingsConfigDict(
        env_prefix="TG2RSS_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    feed_dir: Path = Field(
        default=Path("feeds"),
        description="Directory holding one RSS file per channel",
    )

    # Nested configs
    source: SourceConfig = Field(default_factory=SourceConfig)
    sync: SyncOptions = Field(default_factory=SyncOptions)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def check_paths(self) -> Self:
        """The cursor document must not live inside the served directory."""
        cursor = self.sync.cursor_file
        if cursor.parent.resolve() == self.feed_dir.resolve():
            raise ValueError("sync.cursor_file must not be inside feed_dir")
        return self

    @classmethod
    def from_file(cls, path: Path | str) -> "Settings":
        """Load settings from a TOML or JSON config file."""
        path = Path(path)
        if path.suffix not in (".toml", ".json"):
            raise ConfigError(f"Unsupported config format: {path.suffix}")

        try:
            with path.open("rb") as f:
                data = tomllib.load(f) if path.suffix == ".toml" else json.load(f)
        except FileNotFoundError:
            raise FileNotFoundError(f"Config file not found: {path}") from None
        except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not parse {path}: {e}") from e

        return cls.model_validate(data)

    def to_file(self, path: Path | str) -> None:
        """Save current settings to a config file."""
        path = Path(path)
        data = self.model_dump(mode="json", exclude_none=True)

        if path.suffix == ".toml":
            # Basic TOML serialization, top-level scalars must come first
            lines = []
            for key, value in data.items():
                if not isinstance(value, dict):
                    lines.append(f"{key} = {json.dumps(value)}")
            for key, value in data.items():
                if isinstance(value, dict):
                    lines.append(f"\n[{key}]")
                    for k, v in value.items():
                        lines.append(f"{k} = {json.dumps(v)}")
            path.write_text("\n".join(lines) + "\n")
        else:
            path.write_text(json.dumps(data, indent=2))

    def validate_paths(self) -> list[str]:
        """Check that configured paths are usable. Returns list of errors."""
        errors = []
        if self.feed_dir.exists() and not self.feed_dir.is_dir():
            errors.append(f"feed_dir is not a directory: {self.feed_dir}")
        if self.sync.cursor_file.exists() and not self.sync.cursor_file.is_file():
            errors.append(f"sync.cursor_file is not a file: {self.sync.cursor_file}")
        if not self.source.channels and not self.source.subscriptions_file.exists():
            errors.append(
                "no channels configured (set source.channels or add one with `tg2rss add`)"
            )
        return errors


# Convenience function for loading settings
def load_settings(
    config_file: Path | str | None = None,
    **overrides: Any,
) -> Settings:
    """
    Load settings with optional config file and overrides.

    Args:
        config_file: Optional path to config file
        **overrides: Settings to override (highest priority)

    Returns:
        Configured Settings instance
    """
    if config_file:
        settings = Settings.from_file(config_file)
        if overrides:
            data = settings.model_dump()
            data.update(overrides)
            return Settings.model_validate(data)
        return settings
    return Settings(**overrides)
