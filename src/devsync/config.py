"""DEVSYNC configuration management."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, PrivateAttr

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".devsync"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "devsync.yaml"

GRAPH_SCOPE = "https://graph.microsoft.com/.default"
DEFENDER_SCOPE = "https://api.securitycenter.microsoft.com/.default"


class StoreConfig(BaseModel):
    """Configuration for the document store."""
    db_path: str | None = None  # None = ~/.devsync/devices.db
    sync_collection: str = "devices_all"
    intune_collection: str = "devices_intune"
    defender_collection: str = "devices_defender"

    def resolve_db_path(self) -> Path:
        if self.db_path:
            return Path(self.db_path).expanduser()
        return DEFAULT_CONFIG_DIR / "devices.db"


class CrossSyncConfig(BaseModel):
    """Configuration for the cross-sync run."""
    enabled: bool = True
    batch_size: int = Field(default=100, ge=1)
    max_concurrency: int = Field(default=4, ge=1)
    max_retries: int = Field(default=3, ge=0)
    initial_retry_delay: float = 1.0  # seconds, doubled per retry
    run_retry_delay: float = 300.0  # top-level retry after a failed run
    run_times: list[str] = Field(default_factory=lambda: ["06:00", "12:00", "18:00"])
    run_timeout: float = 3600.0


class CredentialsConfig(BaseModel):
    """Client-credentials settings for one API (config file with env var fallback)."""
    env_prefix: str = "GRAPH"
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str = GRAPH_SCOPE

    # Values taken from the environment, so save_config leaves them out
    _from_env: dict[str, str] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        """Apply environment variable fallbacks."""
        for name in ("tenant_id", "client_id", "client_secret"):
            if getattr(self, name) is None:
                value = os.getenv(f"{self.env_prefix}_{name.upper()}")
                if value:
                    setattr(self, name, value)
                    self._from_env[name] = value
        scope = os.getenv(f"{self.env_prefix}_SCOPE")
        if scope:
            self.scope = scope
            self._from_env["scope"] = scope

    @property
    def is_complete(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    def file_values(self) -> dict[str, Any]:
        """Fields to persist: no secret, nothing still coming from the environment."""
        exclude = {"client_secret"}
        exclude.update(
            name for name, value in self._from_env.items() if getattr(self, name) == value
        )
        return self.model_dump(exclude=exclude)


class DefenderCredentialsConfig(CredentialsConfig):
    """Defender API credentials (DEFENDER_* environment variables)."""
    env_prefix: str = "DEFENDER"
    scope: str = DEFENDER_SCOPE


class SourcesConfig(BaseModel):
    """Configuration for where device inventories are read from."""
    mode: str = "store"  # store, api
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    defender_base_url: str = "https://api.securitycenter.microsoft.com"
    page_size: int = Field(default=100, ge=1, le=1000)
    request_timeout: float = 60.0
    graph: CredentialsConfig = Field(default_factory=CredentialsConfig)
    defender: DefenderCredentialsConfig = Field(default_factory=DefenderCredentialsConfig)


class APIConfig(BaseModel):
    """Configuration for API server."""
    host: str = "127.0.0.1"
    port: int = 7787


class DevSyncConfig(BaseModel):
    """Main DEVSYNC configuration."""
    version: str = "1.0"
    store: StoreConfig = Field(default_factory=StoreConfig)
    cross_sync: CrossSyncConfig = Field(default_factory=CrossSyncConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    api: APIConfig = Field(default_factory=APIConfig)


def get_default_config() -> DevSyncConfig:
    """Get default configuration."""
    return DevSyncConfig()


def load_config(config_path: Path | None = None) -> DevSyncConfig:
    """Load configuration from file or return defaults."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f)
            if data:
                return DevSyncConfig.model_validate(data)

    return get_default_config()


def save_config(config: DevSyncConfig, config_path: Path | None = None) -> None:
    """Save configuration to file.

    Client secrets are never written. Credential fields that came from
    environment variables are left out so the environment keeps applying.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_FILE

    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump()
    for name in ("graph", "defender"):
        data["sources"][name] = getattr(config.sources, name).file_values()

    with open(config_path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def ensure_config_dir() -> Path:
    """Ensure ~/.devsync directory exists and return path."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    (DEFAULT_CONFIG_DIR / "logs").mkdir(exist_ok=True)
    return DEFAULT_CONFIG_DIR


def get_config_path() -> Path:
    """Get the config file path."""
    return DEFAULT_CONFIG_FILE


def get_nested_value(config: DevSyncConfig, key: str) -> Any:
    """Get a nested config value using dotted key notation.

    Examples:
        get_nested_value(config, "cross_sync.batch_size")  -> 100
        get_nested_value(config, "cross_sync.run_times.0") -> "06:00"
    """
    parts = key.split(".")
    obj: Any = config

    for part in parts:
        if isinstance(obj, list):
            try:
                obj = obj[int(part)]
            except (ValueError, IndexError):
                return None
        elif isinstance(obj, dict):
            obj = obj.get(part)
        elif hasattr(obj, part):
            obj = getattr(obj, part)
        else:
            return None

        if obj is None:
            return None

    return obj


def set_nested_value(config: DevSyncConfig, key: str, value: str) -> None:
    """Set a nested config value using dotted key notation.

    Examples:
        set_nested_value(config, "cross_sync.batch_size", "50")
        set_nested_value(config, "sources.mode", "api")

    Note: Values are automatically coerced to the correct type.
    """
    parts = key.split(".")
    obj: Any = config

    # Navigate to parent object
    for part in parts[:-1]:
        if isinstance(obj, list):
            obj = obj[int(part)]
        elif hasattr(obj, part):
            obj = getattr(obj, part)
        else:
            raise KeyError(f"Invalid config key: {key}")

    final_key = parts[-1]

    if not hasattr(obj, final_key):
        raise KeyError(f"Invalid config key: {key}")

    # Coerce value type based on existing field type
    current = getattr(obj, final_key)
    coerced: Any = value
    if isinstance(current, bool):
        coerced = value.lower() in ("true", "1", "yes", "on")
    elif isinstance(current, int):
        coerced = int(value)
    elif isinstance(current, float):
        coerced = float(value)
    elif isinstance(current, list):
        coerced = [v.strip() for v in value.split(",") if v.strip()]

    setattr(obj, final_key, coerced)
