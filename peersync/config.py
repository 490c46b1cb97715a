"""Configuration loading for peersync."""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError


def _default_peer_id() -> str:
    return f"peer-{socket.gethostname()}"


@dataclass
class NodeConfig:
    peer_id: str = field(default_factory=_default_peer_id)
    namespace: str = "default"


@dataclass
class ReconciliationConfig:
    """Configuration for the reconciliation engine."""

    strategy: str = "clock_dominant"  # "clock_dominant" or "last_write_wins"
    sync_interval_seconds: float = 5.0


@dataclass
class MQTTConfig:
    enabled: bool = True
    broker: str = "localhost"
    port: int = 1883
    username: str | None = None
    password: str | None = None
    topic_prefix: str = "peersync"
    keepalive: int = 60


@dataclass
class DiscoveryConfig:
    """Configuration for mDNS/Zeroconf peer discovery."""

    enabled: bool = False
    service_type: str = "_peersync._tcp"
    announce: bool = True  # Announce this peer
    browse: bool = True  # Browse for other peers
    cache_ttl_seconds: int = 300  # 5 minutes


@dataclass
class HTTPConfig:
    """Configuration for the HTTP state API and bootstrap client."""

    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8470
    bootstrap_on_discovery: bool = True  # Pull state from peers found via mDNS
    max_retries: int = 3
    timeout: float = 10.0


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with PEERSYNC_ prefix."""
    return os.environ.get(f"PEERSYNC_{key}", default)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("true", "1", "yes")


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if peer_id := _get_env("PEER_ID"):
        config.node.peer_id = peer_id
    if namespace := _get_env("NAMESPACE"):
        config.node.namespace = namespace

    # Reconciliation overrides
    if strategy := _get_env("STRATEGY"):
        config.reconciliation.strategy = strategy
    if interval := _get_env("SYNC_INTERVAL"):
        config.reconciliation.sync_interval_seconds = _as_float(interval, "PEERSYNC_SYNC_INTERVAL")

    # MQTT overrides
    if mqtt_enabled := _get_env("MQTT_ENABLED"):
        config.mqtt.enabled = _as_bool(mqtt_enabled)
    if broker := _get_env("MQTT_BROKER"):
        config.mqtt.broker = broker
    if port := _get_env("MQTT_PORT"):
        config.mqtt.port = _as_int(port, "PEERSYNC_MQTT_PORT")
    if username := _get_env("MQTT_USERNAME"):
        config.mqtt.username = username
    if password := _get_env("MQTT_PASSWORD"):
        config.mqtt.password = password

    # Discovery overrides
    if discovery_enabled := _get_env("DISCOVERY_ENABLED"):
        config.discovery.enabled = _as_bool(discovery_enabled)

    # HTTP overrides
    if http_enabled := _get_env("HTTP_ENABLED"):
        config.http.enabled = _as_bool(http_enabled)
    if http_port := _get_env("HTTP_PORT"):
        config.http.port = _as_int(http_port, "PEERSYNC_HTTP_PORT")

    return config


def _validate(config: Config) -> None:
    if not config.node.peer_id:
        raise ConfigurationError("node.peer_id must not be empty")
    if config.reconciliation.sync_interval_seconds <= 0:
        raise ConfigurationError(
            f"reconciliation.sync_interval_seconds must be positive, "
            f"got {config.reconciliation.sync_interval_seconds}"
        )


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ConfigurationError: If a value has the wrong type.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse node config
            if "node" in data:
                node_data = data["node"]
                config.node = NodeConfig(
                    peer_id=str(node_data.get("peer_id", config.node.peer_id)),
                    namespace=node_data.get("namespace", config.node.namespace),
                )

            # Parse reconciliation config
            if "reconciliation" in data:
                rec_data = data["reconciliation"]
                config.reconciliation = ReconciliationConfig(
                    strategy=rec_data.get("strategy", config.reconciliation.strategy),
                    sync_interval_seconds=_as_float(
                        rec_data.get(
                            "sync_interval_seconds",
                            config.reconciliation.sync_interval_seconds,
                        ),
                        "reconciliation.sync_interval_seconds",
                    ),
                )

            # Parse MQTT config
            if "mqtt" in data:
                mqtt_data = data["mqtt"]
                config.mqtt = MQTTConfig(
                    enabled=_as_bool(mqtt_data.get("enabled", config.mqtt.enabled)),
                    broker=mqtt_data.get("broker", config.mqtt.broker),
                    port=_as_int(mqtt_data.get("port", config.mqtt.port), "mqtt.port"),
                    username=mqtt_data.get("username"),
                    password=mqtt_data.get("password"),
                    topic_prefix=mqtt_data.get("topic_prefix", config.mqtt.topic_prefix),
                    keepalive=_as_int(
                        mqtt_data.get("keepalive", config.mqtt.keepalive), "mqtt.keepalive"
                    ),
                )

            # Parse discovery config
            if "discovery" in data:
                disc_data = data["discovery"]
                config.discovery = DiscoveryConfig(
                    enabled=_as_bool(disc_data.get("enabled", config.discovery.enabled)),
                    service_type=disc_data.get("service_type", config.discovery.service_type),
                    announce=_as_bool(disc_data.get("announce", config.discovery.announce)),
                    browse=_as_bool(disc_data.get("browse", config.discovery.browse)),
                    cache_ttl_seconds=_as_int(
                        disc_data.get("cache_ttl_seconds", config.discovery.cache_ttl_seconds),
                        "discovery.cache_ttl_seconds",
                    ),
                )

            # Parse HTTP config
            if "http" in data:
                http_data = data["http"]
                config.http = HTTPConfig(
                    enabled=_as_bool(http_data.get("enabled", config.http.enabled)),
                    host=http_data.get("host", config.http.host),
                    port=_as_int(http_data.get("port", config.http.port), "http.port"),
                    bootstrap_on_discovery=_as_bool(
                        http_data.get("bootstrap_on_discovery", config.http.bootstrap_on_discovery)
                    ),
                    max_retries=_as_int(
                        http_data.get("max_retries", config.http.max_retries), "http.max_retries"
                    ),
                    timeout=_as_float(http_data.get("timeout", config.http.timeout), "http.timeout"),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)
    _validate(config)

    return config
