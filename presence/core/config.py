"""Configuration management using Pydantic and YAML."""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

DEFAULT_DB_PATH = Path.home() / ".presence" / "presence.db"
CONFIG_ENV_VAR = "PRESENCE_CONFIG"


class MatchingConfig(BaseModel):
    """Match/create decision configuration."""

    match_threshold: float = Field(ge=0, le=100, default=75.0)
    create_threshold: float = Field(ge=0, le=1, default=0.7)
    candidate_limit: int = Field(ge=1, default=100)
    feature_dimension: int = Field(ge=1, default=32)
    match_timeout_ms: int = Field(ge=1, default=2000)
    quantization_levels: int = Field(ge=2, le=256, default=16)


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    backend: Literal["memory", "sqlite"] = "sqlite"
    db_path: Path = Field(default_factory=lambda: DEFAULT_DB_PATH)


class EventsConfig(BaseModel):
    """Outbound event notification configuration."""

    enabled: bool = False
    endpoint: str = "http://context-service:3001/events"
    timeout_seconds: float = Field(gt=0, default=2.0)
    source: str = "fingerprint-service"


class ExtractorConfig(BaseModel):
    """Default feature extractor configuration."""

    sample_rate: int = Field(ge=8000, default=22050)
    hop_length: int = Field(ge=64, default=512)
    max_duration_sec: float = Field(gt=0, default=15.0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    file: str = "presence.log"


class PresenceConfig(BaseModel):
    """Main application configuration."""

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _candidate_paths() -> list[Path]:
    paths = [
        Path.cwd() / "config" / "config.yaml",
        Path.home() / ".config" / "presence" / "config.yaml",
        Path.home() / ".presence" / "config.yaml",
    ]
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        paths.insert(0, Path(override))
    return paths


def load_config(config_path: Path | None = None) -> PresenceConfig:
    """Load configuration from YAML file.

    Without an explicit path, ``$PRESENCE_CONFIG`` is tried first, then
    ``./config/config.yaml`` and the per-user locations.

    Args:
        config_path: Path to config file. If None, the first existing
            candidate location is used.

    Returns:
        PresenceConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    if config_path is None:
        candidates = _candidate_paths()
        config_path = next((p for p in candidates if p.exists()), candidates[0])

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    return PresenceConfig(**data)
