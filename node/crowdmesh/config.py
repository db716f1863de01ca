"""Node configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: CROWDMESH_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    env: str = "dev"  # "dev" or "prod"


@dataclass
class NodeConfig:
    name: str = "CrowdMesh Node"


@dataclass
class TransportConfig:
    backend: str = "memory"  # only "memory" ships with the node


@dataclass
class QueueConfig:
    max_size: int = 10_000


@dataclass
class ProximityConfig:
    window_ms: int = 5000
    closing_in_threshold: int = 5
    poll_interval_ms: int = 1000
    broadcast_interval_ms: int = 2000


@dataclass
class CrowdConfig:
    nearby_threshold: int = -70
    high_proportion: float = 0.6
    medium_proportion: float = 0.4
    tick_interval_ms: int = 5000


@dataclass
class LocationConfig:
    anchor_broadcast_ms: int = 5000
    proximity_report_ms: int = 3000
    default_proximity_distance_m: float = 25.0
    ref_strength_1m: float = -59.0
    path_loss_exponent: float = 2.0
    max_distance_m: float = 100.0
    anchor_ttl_seconds: float = 0.0  # 0 = keep until the peer is lost
    expiry_check_ms: int = 1000


@dataclass
class ChatConfig:
    max_messages: int = 500
    max_length: int = 2000


@dataclass
class LimitsConfig:
    active_window_seconds: float = 120.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    node: NodeConfig = field(default_factory=NodeConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    proximity: ProximityConfig = field(default_factory=ProximityConfig)
    crowd: CrowdConfig = field(default_factory=CrowdConfig)
    location: LocationConfig = field(default_factory=LocationConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _coerce(current: object, raw: str) -> object:
    """Convert an env string to the type of the field's current value."""
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    for section_field in fields(config):
        section = getattr(config, section_field.name)
        for f in fields(section):
            env_key = f"CROWDMESH_{section_field.name}_{f.name}".upper()
            val = os.environ.get(env_key)
            if val is not None:
                setattr(section, f.name, _coerce(getattr(section, f.name), val))


def _apply_yaml(config: AppConfig, raw: dict) -> None:
    for section_field in fields(config):
        values = raw.get(section_field.name)
        if not isinstance(values, dict):
            continue
        section = getattr(config, section_field.name)
        for k, v in values.items():
            if hasattr(section, k):
                setattr(section, k, v)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("CROWDMESH_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        _apply_yaml(config, raw)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
