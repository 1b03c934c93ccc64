"""SDK configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: TRIPSDK_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class CaptureConfig:
    backend: str = "simulated"
    stop_ack_timeout_ms: int = 500
    tick_seconds: float = 1.0
    samples_per_tick: int = 10
    center: str = "45.764,4.835"  # lat,lon of the simulated drive


@dataclass
class StorageConfig:
    backend: str = "file"  # "file" or "memory"
    base_dir: str = "data/tripsdk"


@dataclass
class TransferConfig:
    work_dir: str = "data/tmp"
    compression_level: int = 5
    query_limit: int = 10_000


@dataclass
class SyncConfig:
    outbox_dir: str = "data/outbox"
    max_file_size: int = 0  # bytes, 0 = unlimited
    token: str = "local-dev-token"
    device_id: str = "local-device"
    device_type: str = "simulator"
    os_version: str = "python"
    app_version: str = "0.1.0"


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8100
    env: str = "dev"  # "dev" or "prod"


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _convert(current, value: str):
    if isinstance(current, bool):
        return value.lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    for section_field in fields(config):
        section = getattr(config, section_field.name)
        for f in fields(section):
            env_key = f"TRIPSDK_{section_field.name}_{f.name}".upper()
            val = os.environ.get(env_key)
            if val is not None:
                setattr(section, f.name, _convert(getattr(section, f.name), val))


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    if config_path is None:
        config_path = Path(os.environ.get("TRIPSDK_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section_field in fields(config):
            section = getattr(config, section_field.name)
            for k, v in (raw.get(section_field.name) or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
