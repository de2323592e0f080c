"""
Configuration management for a diaryindex store.

The configuration is stored as a TOML file in the store directory.
It holds build limits and embedding request settings; per-user AI
settings (API key, model) live in the settings store instead.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "diaryindex.toml"
CONFIG_VERSION = 1

DEFAULT_BUILD_TIMEOUT = 300.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_REQUEST_TIMEOUT = 30.0


def get_default_store_path() -> Path:
    """Store directory from DIARYINDEX_STORE_PATH, else ~/.diaryindex."""
    env = os.environ.get("DIARYINDEX_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".diaryindex"


@dataclass
class BuildConfig:
    """Limits for vector build passes."""
    timeout_seconds: float = DEFAULT_BUILD_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS


@dataclass
class EmbeddingConfig:
    """Settings shared by all embedding provider calls."""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    build: BuildConfig = field(default_factory=BuildConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _positive(section: dict, key: str, default: Any, cast: type) -> Any:
    value = section.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config value {key!r} must be a number, got {value!r}")
    if value <= 0:
        raise ValueError(f"Config value {key!r} must be positive, got {value!r}")
    return value


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    build = data.get("build", {})
    embedding = data.get("embedding", {})
    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        build=BuildConfig(
            timeout_seconds=_positive(build, "timeout_seconds", DEFAULT_BUILD_TIMEOUT, float),
            max_workers=_positive(build, "max_workers", DEFAULT_MAX_WORKERS, int),
        ),
        embedding=EmbeddingConfig(
            request_timeout=_positive(embedding, "request_timeout", DEFAULT_REQUEST_TIMEOUT, float),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "build": {
            "timeout_seconds": config.build.timeout_seconds,
            "max_workers": config.build.max_workers,
        },
        "embedding": {
            "request_timeout": config.embedding.request_timeout,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
