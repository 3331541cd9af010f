"""
Config - procgroups
Engine settings: clustering thresholds, provider endpoints and the naming
strategy. Loaded from ~/.config/procgroups/config.json with environment
variable overrides on top.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".config/procgroups"
DEFAULT_DATA_DIR = Path.home() / ".local/share/procgroups"
CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

OPENROUTER_URL = "https://openrouter.ai/api/v1"

NAMING_STRATEGIES = ("heuristic", "model")

# env var → config field
ENV_OVERRIDES = {
    "OPENROUTER_API_KEY": "api_key",
    "PROCGROUPS_API_URL": "api_url",
    "PROCGROUPS_EMBEDDING_MODEL": "embedding_model",
    "PROCGROUPS_CHAT_MODEL": "chat_model",
    "PROCGROUPS_NAMER": "naming_strategy",
    "PROCGROUPS_DATA_DIR": "data_dir",
}


class ConfigError(Exception):
    pass


@dataclass
class EngineConfig:
    """Configuration for the clustering engine and its providers."""

    # Fast path
    join_threshold: float = 0.75        # min similarity to join an existing cluster
    centroid_window: int = 10           # trailing members averaged on incremental join

    # Full recluster
    merge_threshold: float = 0.8        # min similarity to merge two clusters
    max_cluster_size: int = 25          # in unique text-groups, not pids
    min_cluster_size: int = 2
    min_clusters_kept: int = 5          # skip the min-size filter at or below this
    singleton_debt_limit: int = 5
    recluster_interval_seconds: float = 60.0
    pid_change_ratio: float = 0.2

    # Embeddings
    embedding_batch_size: int = 50
    embedding_dimensions: int = 1536
    key_max_length: int = 500
    api_url: str = OPENROUTER_URL
    api_key: str = ""
    embedding_model: str = "openai/text-embedding-3-small"
    request_timeout: float = 30.0

    # Naming
    naming_strategy: str = "heuristic"
    chat_model: str = "mistralai/mistral-small-3.1-24b-instruct:free"
    max_model_names_per_cycle: int = 5

    # Monitor
    poll_interval_seconds: float = 2.0
    data_dir: str = str(DEFAULT_DATA_DIR)
    persist_cache: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        config = cls(**{k: v for k, v in data.items() if k in known})
        config.validate()
        return config

    def validate(self):
        """Raise ConfigError for settings the engine cannot run with."""
        if self.naming_strategy not in NAMING_STRATEGIES:
            raise ConfigError(
                f"Unknown naming_strategy '{self.naming_strategy}'. "
                f"Use one of: {', '.join(NAMING_STRATEGIES)}"
            )
        for name in ("join_threshold", "merge_threshold"):
            value = getattr(self, name)
            if not -1.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [-1, 1], got {value}")
        for name in ("max_cluster_size", "embedding_batch_size", "centroid_window", "key_max_length"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1")

    @property
    def db_file(self) -> Path:
        return Path(self.data_dir) / "procgroups.db"


def load_config(config_file: Path | None = None, environ: dict | None = None) -> EngineConfig:
    """
    Build an EngineConfig from the JSON config file (if it exists) and the
    environment. Environment values win over the file.
    """
    config_file = Path(config_file) if config_file else CONFIG_FILE
    environ = os.environ if environ is None else environ

    data: dict = {}
    if config_file.exists():
        try:
            with open(config_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Could not read {config_file}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{config_file} must contain a JSON object")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            data[field_name] = value

    try:
        return EngineConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid config: {e}") from e


def save_config(config: EngineConfig, config_file: Path | None = None):
    """Write the config back to disk. The API key is never persisted."""
    config_file = Path(config_file) if config_file else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = config.to_dict()
    data.pop("api_key", None)
    with open(config_file, "w") as f:
        json.dump(data, f, indent=2)
