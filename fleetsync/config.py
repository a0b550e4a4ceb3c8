"""Configuration loading for fleetsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

SYNC_MODES = ("none", "push", "pull", "pushpull")


@dataclass
class NodeConfig:
    id: str = "fleetsync-node"


@dataclass
class ServerConfig:
    """Peer to reconcile against, and where this node serves its own endpoints."""

    url: str = ""  # Base URL of the server, "file:" URLs disable network sync
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LogSyncConfig:
    """Configuration for audit log synchronization."""

    enabled: bool = True
    endpoint: str = "auditlog"
    mode: str = "push"  # "none", "push", "pull" or "pushpull"
    interval_seconds: int = 60
    isolate_failures: bool = True  # Skip only the failing log instead of the cycle
    timeout: float = 30.0
    max_retries: int = 3
    db_path: str = "~/.fleetsync/log.db"


@dataclass
class RepositoryConfig:
    """Configuration for the versioned repositories this node hosts."""

    path: str = "~/.fleetsync/repository"
    names: list[str] = field(default_factory=lambda: ["store"])
    master: bool = True
    file_extension: str = ""
    limit: int | None = None  # Versions kept per repository, None keeps all


@dataclass
class ReplicationConfig:
    """Configuration for mirroring repositories from a master."""

    enabled: bool = False
    master_url: str = ""
    names: list[str] = field(default_factory=list)  # Empty mirrors repository.names
    interval_seconds: int = 300
    limit: int | None = None  # Only fetch the newest N versions
    timeout: float = 30.0


@dataclass
class Config:
    revision: int = 0
    node: NodeConfig = field(default_factory=NodeConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_sync: LogSyncConfig = field(default_factory=LogSyncConfig)
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)

    @property
    def replicated_names(self) -> list[str]:
        """Repository names the replication task mirrors."""
        return self.replication.names or self.repository.names


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with FLEETSYNC_ prefix."""
    return os.environ.get(f"FLEETSYNC_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _optional_int(value: Any) -> int | None:
    if value is None or value == "" or str(value).lower() == "none":
        return None
    return int(value)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if node_id := _get_env("NODE_ID"):
        config.node.id = node_id

    # Server overrides
    if url := _get_env("SERVER_URL"):
        config.server.url = url
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)

    # Log sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.log_sync.enabled = _as_bool(sync_enabled)
    if sync_interval := _get_env("SYNC_INTERVAL"):
        config.log_sync.interval_seconds = int(sync_interval)
    if sync_mode := _get_env("SYNC_MODE"):
        config.log_sync.mode = sync_mode.lower()
    if endpoint := _get_env("SYNC_ENDPOINT"):
        config.log_sync.endpoint = endpoint
    if isolate := _get_env("SYNC_ISOLATE_FAILURES"):
        config.log_sync.isolate_failures = _as_bool(isolate)
    if db_path := _get_env("LOG_DB_PATH"):
        config.log_sync.db_path = db_path

    # Repository overrides
    if repo_path := _get_env("REPOSITORY_PATH"):
        config.repository.path = repo_path
    if repo_names := _get_env("REPOSITORY_NAMES"):
        config.repository.names = [n.strip() for n in repo_names.split(",") if n.strip()]
    if repo_master := _get_env("REPOSITORY_MASTER"):
        config.repository.master = _as_bool(repo_master)
    if repo_limit := _get_env("REPOSITORY_LIMIT"):
        config.repository.limit = _optional_int(repo_limit)

    # Replication overrides
    if repl_enabled := _get_env("REPLICATION_ENABLED"):
        config.replication.enabled = _as_bool(repl_enabled)
    if master_url := _get_env("REPLICATION_MASTER_URL"):
        config.replication.master_url = master_url
    if repl_interval := _get_env("REPLICATION_INTERVAL"):
        config.replication.interval_seconds = int(repl_interval)

    return config


def _validate(config: Config) -> None:
    if config.log_sync.mode not in SYNC_MODES:
        raise ValueError(
            f"Invalid log_sync.mode {config.log_sync.mode!r}, "
            f"expected one of {', '.join(SYNC_MODES)}"
        )
    if config.repository.limit is not None and config.repository.limit < 1:
        raise ValueError("repository.limit must be at least 1")
    if config.replication.limit is not None and config.replication.limit < 1:
        raise ValueError("replication.limit must be at least 1")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ValueError: If a value is out of range or a sync mode is unknown.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            config.revision = data.get("revision", config.revision)

            # Parse node config
            if "node" in data:
                config.node = NodeConfig(id=data["node"].get("id", config.node.id))

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    url=server_data.get("url", config.server.url),
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

            # Parse log sync config
            if "log_sync" in data:
                sync_data = data["log_sync"]
                config.log_sync = LogSyncConfig(
                    enabled=sync_data.get("enabled", config.log_sync.enabled),
                    endpoint=sync_data.get("endpoint", config.log_sync.endpoint),
                    mode=str(sync_data.get("mode", config.log_sync.mode)).lower(),
                    interval_seconds=sync_data.get(
                        "interval_seconds", config.log_sync.interval_seconds
                    ),
                    isolate_failures=sync_data.get(
                        "isolate_failures", config.log_sync.isolate_failures
                    ),
                    timeout=sync_data.get("timeout", config.log_sync.timeout),
                    max_retries=sync_data.get(
                        "max_retries", config.log_sync.max_retries
                    ),
                    db_path=sync_data.get("db_path", config.log_sync.db_path),
                )

            # Parse repository config
            if "repository" in data:
                repo_data = data["repository"]
                config.repository = RepositoryConfig(
                    path=repo_data.get("path", config.repository.path),
                    names=list(repo_data.get("names", config.repository.names)),
                    master=repo_data.get("master", config.repository.master),
                    file_extension=repo_data.get(
                        "file_extension", config.repository.file_extension
                    ),
                    limit=_optional_int(repo_data.get("limit")),
                )

            # Parse replication config
            if "replication" in data:
                repl_data = data["replication"]
                config.replication = ReplicationConfig(
                    enabled=repl_data.get("enabled", config.replication.enabled),
                    master_url=repl_data.get(
                        "master_url", config.replication.master_url
                    ),
                    names=list(repl_data.get("names", [])),
                    interval_seconds=repl_data.get(
                        "interval_seconds", config.replication.interval_seconds
                    ),
                    limit=_optional_int(repl_data.get("limit")),
                    timeout=repl_data.get("timeout", config.replication.timeout),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    _validate(config)
    return config
