"""Configuration loading for Scribble."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class StoreConfig:
    """Configuration for the local key/value store."""

    db_path: str = "~/.scribble/state.db"


@dataclass
class SyncConfig:
    """Configuration for syncing with the remote blob store."""

    enabled: bool = True
    base_url: str = ""
    sync_id: str = ""
    token: str = ""
    interval_hours: float = 24
    lock_ttl_seconds: int = 120
    timeout_seconds: float = 30.0
    check_interval_minutes: int = 15  # How often `watch` checks the gate


@dataclass
class ServerConfig:
    """Configuration for the blob store server."""

    host: str = "127.0.0.1"
    port: int = 8787
    db_path: str = "~/.scribble/blobs.db"
    auth_token: str = ""


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with SCRIBBLE_ prefix."""
    return os.environ.get(f"SCRIBBLE_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Store overrides
    if db_path := _get_env("STORE_DB_PATH"):
        config.store.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if base_url := _get_env("SYNC_BASE_URL"):
        config.sync.base_url = base_url
    if sync_id := _get_env("SYNC_ID"):
        config.sync.sync_id = sync_id
    if token := _get_env("SYNC_TOKEN"):
        config.sync.token = token
    if interval := _get_env("SYNC_INTERVAL_HOURS"):
        config.sync.interval_hours = float(interval)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db
    if auth_token := _get_env("AUTH_TOKEN"):
        config.server.auth_token = auth_token

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse store config
            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    base_url=sync_data.get("base_url", config.sync.base_url),
                    sync_id=sync_data.get("sync_id", config.sync.sync_id),
                    token=sync_data.get("token", config.sync.token),
                    interval_hours=sync_data.get(
                        "interval_hours", config.sync.interval_hours
                    ),
                    lock_ttl_seconds=sync_data.get(
                        "lock_ttl_seconds", config.sync.lock_ttl_seconds
                    ),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    check_interval_minutes=sync_data.get(
                        "check_interval_minutes", config.sync.check_interval_minutes
                    ),
                )

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                    auth_token=server_data.get("auth_token", config.server.auth_token),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
