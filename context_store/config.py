"""
Configuration management for context stores.

The configuration is stored as a TOML file in the store directory.
It records the default project, the sync remote and the machine label
written into sync metadata.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# tomli_w for writing TOML (tomllib is read-only)
import tomli_w


CONFIG_FILENAME = "context.toml"
CONFIG_VERSION = 1
DEFAULT_STORE_DIRNAME = ".context-store"


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    default_project: Optional[str] = None
    remote: Optional[Path] = None
    machine: Optional[str] = None

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the SQLite store file."""
        from .sync import DB_FILENAME
        return self.path / DB_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_store_path(store: Optional[Path] = None) -> Path:
    """
    Resolve the store directory.

    Priority:
    1. Explicit argument (e.g. --store)
    2. CONTEXT_STORE_PATH environment variable
    3. ~/.context-store
    """
    if store is not None:
        return Path(store).expanduser()
    env = os.environ.get("CONTEXT_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIRNAME


def resolve_project(explicit: Optional[str], config: Optional[StoreConfig] = None) -> str:
    """
    Resolve the active project.

    Priority: explicit value, CONTEXT_PROJECT, the config's
    default_project, then the name of the current directory.
    """
    if explicit:
        return explicit
    env = os.environ.get("CONTEXT_PROJECT")
    if env:
        return env
    if config is not None and config.default_project:
        return config.default_project
    return Path.cwd().name or "default"


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

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    sync = data.get("sync", {})
    remote = sync.get("remote")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        default_project=store.get("default_project") or None,
        remote=Path(remote).expanduser() if remote else None,
        machine=sync.get("machine") or None,
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. Unset optional values
    are omitted (TOML has no null).
    """
    config.path.mkdir(parents=True, exist_ok=True)

    store: dict = {
        "version": config.version,
        "created": config.created,
    }
    if config.default_project:
        store["default_project"] = config.default_project

    sync: dict = {}
    if config.remote is not None:
        sync["remote"] = str(config.remote)
    if config.machine:
        sync["machine"] = config.machine

    data: dict = {"store": store}
    if sync:
        data["sync"] = sync

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
