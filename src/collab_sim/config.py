"""Configuration loading and validation."""

from __future__ import annotations

import copy
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigError
from .models import NetworkCondition

DEFAULT_CONFIG_PATH = "~/.collab-sim/config.yaml"


class BrokerOptions(BaseModel):
    url: str = "ws://localhost:3001/ws"
    port: int = 3002
    delay_ms: float = Field(100.0, ge=0)
    failure_rate: float = Field(0.0, ge=0, le=1)  # probability per delivery
    message_history: bool = True
    max_history_size: int = Field(1000, ge=1)
    open_delay_ms: float = Field(100.0, ge=0)  # CONNECTING -> OPEN
    duplicate_ids: Literal["replace", "reject"] = "replace"


class WebSocketConfig(BaseModel):
    url: str = "ws://localhost:3001/ws"
    protocols: list[str] = Field(default_factory=lambda: ["mcp-realtime-v1"])
    reconnect_attempts: int = 5
    reconnect_interval: int = 3000
    heartbeat_interval: int = 30000
    connection_timeout: int = 10000


class SimulationConfig(BaseModel):
    max_concurrent_users: int = 50
    user_batch_size: int = 5
    batch_delay: int = 2000
    user_action_delay: int = 100
    sync_timeout: int = 15000


class ConnectionThresholds(BaseModel):
    max_establishment_time: float = 5000
    max_reconnection_time: float = 20000
    min_success_rate: float = 95


class MessagingThresholds(BaseModel):
    max_average_latency: float = 1000
    max_latency: float = 5000
    min_throughput: float = 5  # messages/sec
    min_success_rate: float = 95


class MemoryThresholds(BaseModel):
    max_increase: int = 100 * 1024 * 1024
    max_increase_percent: float = 200


class PerformanceConfig(BaseModel):
    connection: ConnectionThresholds = Field(default_factory=ConnectionThresholds)
    messaging: MessagingThresholds = Field(default_factory=MessagingThresholds)
    memory: MemoryThresholds = Field(default_factory=MemoryThresholds)


def _default_conditions() -> dict[str, NetworkCondition]:
    from .network import NetworkConditions

    return NetworkConditions.as_dict()


class NetworkConfig(BaseModel):
    conditions: dict[str, NetworkCondition] = Field(default_factory=_default_conditions)
    default_condition: str = "FAST_WIFI"


class TimeoutsConfig(BaseModel):
    short: int = 5000
    medium: int = 15000
    long: int = 30000
    performance: int = 60000
    scalability: int = 120000


class FeaturesConfig(BaseModel):
    presence_indicators: bool = True
    typing_indicators: bool = True
    cursor_sharing: bool = True
    conflict_resolution: bool = True
    offline_mode: bool = True
    cross_tool_sync: bool = True
    activity_feed: bool = True
    notifications: bool = True


class HarnessConfig(BaseModel):
    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    mock_server: BrokerOptions = Field(
        default_factory=lambda: BrokerOptions(failure_rate=0.01)
    )
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)

    def condition(self, name: str | None = None) -> NetworkCondition:
        """Resolve a named network condition (default condition if None)."""
        key = name or self.network.default_condition
        try:
            return self.network.conditions[key]
        except KeyError:
            known = ", ".join(sorted(self.network.conditions))
            raise ConfigError(
                f"Unknown network condition: {key!r}. Known: {known}"
            ) from None


# Environment presets, applied with get_test_config(...)
CI_CONFIG: dict[str, Any] = {
    "simulation": {
        "max_concurrent_users": 10,
        "user_batch_size": 2,
        "batch_delay": 3000,
        "user_action_delay": 200,
        "sync_timeout": 30000,
    },
    "timeouts": {
        "short": 10000,
        "medium": 30000,
        "long": 60000,
        "performance": 120000,
        "scalability": 300000,
    },
    "performance": {
        "connection": {
            "max_establishment_time": 10000,
            "max_reconnection_time": 30000,
            "min_success_rate": 90,
        },
        "messaging": {
            "max_average_latency": 2000,
            "max_latency": 10000,
            "min_throughput": 3,
            "min_success_rate": 90,
        },
    },
}

LOCAL_DEV_CONFIG: dict[str, Any] = {
    "simulation": {
        "max_concurrent_users": 25,
        "user_batch_size": 5,
        "batch_delay": 1000,
        "user_action_delay": 50,
        "sync_timeout": 10000,
    },
    "mock_server": {"delay_ms": 50, "failure_rate": 0.005},
}

STRESS_TEST_CONFIG: dict[str, Any] = {
    "simulation": {
        "max_concurrent_users": 100,
        "user_batch_size": 10,
        "batch_delay": 500,
        "user_action_delay": 20,
        "sync_timeout": 60000,
    },
    "timeouts": {
        "short": 15000,
        "medium": 60000,
        "long": 120000,
        "performance": 300000,
        "scalability": 600000,
    },
    "performance": {
        "messaging": {
            "max_average_latency": 5000,
            "max_latency": 15000,
            "min_throughput": 1,
            "min_success_rate": 85,
        },
    },
}

PRESETS: dict[str, dict[str, Any]] = {
    "ci": CI_CONFIG,
    "local": LOCAL_DEV_CONFIG,
    "stress": STRESS_TEST_CONFIG,
}


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _build(data: dict[str, Any]) -> HarnessConfig:
    try:
        return HarnessConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid harness configuration: {e}") from e


def get_test_config(
    overrides: dict[str, Any] | None = None,
    base: HarnessConfig | None = None,
) -> HarnessConfig:
    """Return the default config with ``overrides`` deep-merged on top.

    Nested sections merge key by key, so ``{"mock_server": {"delay_ms": 5}}``
    keeps every other mock_server field.
    """
    base_data = (base or HarnessConfig()).model_dump()
    return _build(_deep_merge(base_data, overrides or {}))


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} with environment variable values."""

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, "")

    return re.sub(r"\$\{(\w+)\}", replacer, text)


_ENV_KEYS = ("MOCK_LATENCY_MS", "MOCK_FAILURE_RATE", "MAX_CONCURRENT_USERS", "WS_BASE_URL")


def _config_from_env() -> HarnessConfig:
    """Build config from environment variables (for CI runners).

    Falls back to defaults for anything not set.
    """
    overrides: dict[str, Any] = {}
    try:
        if os.environ.get("WS_BASE_URL"):
            overrides["websocket"] = {"url": os.environ["WS_BASE_URL"]}
        if os.environ.get("MAX_CONCURRENT_USERS"):
            overrides["simulation"] = {
                "max_concurrent_users": int(os.environ["MAX_CONCURRENT_USERS"])
            }
        server: dict[str, Any] = {}
        if os.environ.get("MOCK_LATENCY_MS"):
            server["delay_ms"] = float(os.environ["MOCK_LATENCY_MS"])
        if os.environ.get("MOCK_FAILURE_RATE"):
            server["failure_rate"] = float(os.environ["MOCK_FAILURE_RATE"])
        if server:
            overrides["mock_server"] = server
    except ValueError as e:
        raise ConfigError(f"Invalid numeric environment override: {e}") from e
    return get_test_config(overrides)


def load_config(path: str | Path | None = None) -> HarnessConfig:
    """Load config from YAML file, env vars, or defaults.

    Priority: config.yaml (with ${ENV} interpolation) > env vars > defaults.
    """
    if path is None:
        path = Path(DEFAULT_CONFIG_PATH).expanduser()
    else:
        path = Path(path).expanduser()

    if not path.exists():
        if any(os.environ.get(key) for key in _ENV_KEYS):
            return _config_from_env()
        return HarnessConfig()

    raw_text = path.read_text()
    interpolated = _interpolate_env_vars(raw_text)
    try:
        data = yaml.safe_load(interpolated)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    if data is None:
        return HarnessConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    preset = data.pop("preset", None)
    if preset:
        if preset not in PRESETS:
            raise ConfigError(
                f"Unknown preset: {preset!r}. Supported: {', '.join(PRESETS)}"
            )
        return get_test_config(_deep_merge(PRESETS[preset], data))
    return get_test_config(data)


def save_config(config: HarnessConfig, path: str | Path | None = None) -> Path:
    """Save config to YAML file."""
    if path is None:
        path = Path(DEFAULT_CONFIG_PATH).expanduser()
    else:
        path = Path(path).expanduser()

    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump()
    path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))
    return path
