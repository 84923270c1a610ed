"""
Configuration management for the webhook forwarder.

Handles loading, validation, and hot-reloading of forwarder configuration
from files and environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..webhooks.events import DeliveryRule, Destination

logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration cannot be loaded or validated."""


def _resolve_env(v: Optional[str], default_env: str) -> Optional[str]:
    if v is None:
        return os.getenv(default_env)
    if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
        return os.getenv(v[2:-1])
    return v


class RemotePattern(BaseModel):
    """Object form of a destination URL."""

    hostname: str
    protocol: str = "http"
    port: Optional[Union[str, int]] = None
    pathname: str = ""
    search: str = ""

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        if v not in ("http", "https"):
            raise ValueError(f"Invalid protocol: {v}. Must be 'http' or 'https'")
        return v

    def to_url(self) -> str:
        port = f":{self.port}" if self.port else ""
        return f"{self.protocol}://{self.hostname}{port}{self.pathname}{self.search}"


def normalize_url(value: Union[str, RemotePattern, Dict[str, Any]]) -> str:
    """Normalize a string or remote pattern into one absolute URL string."""
    if isinstance(value, dict):
        value = RemotePattern(**value)
    if isinstance(value, RemotePattern):
        return value.to_url()
    return str(value)


class BrokerConfig(BaseModel):
    """Configuration for the remote event broker API."""

    api_url: str = Field(default="https://api.unhook.sh", description="Broker API URL")
    api_key: Optional[str] = Field(default=None, description="API key for authentication")
    webhook_id: str = Field(default="", description="Webhook whose events are forwarded")
    timeout_seconds: float = Field(default=30.0, description="Request timeout in seconds")
    max_retries: int = Field(default=3, description="Maximum retries for broker reads")

    @field_validator("api_key", mode="before")
    @classmethod
    def resolve_api_key(cls, v: Optional[str]) -> Optional[str]:
        """Resolve API key from environment variable if needed."""
        return _resolve_env(v, "WEBHOOK_FORWARDER_API_KEY")

    @field_validator("webhook_id", mode="before")
    @classmethod
    def resolve_webhook_id(cls, v: Optional[str]) -> str:
        """Resolve webhook ID from environment variable if needed."""
        return _resolve_env(v, "WEBHOOK_FORWARDER_WEBHOOK_ID") or ""


class ServerConfig(BaseModel):
    """Configuration for process-level behavior."""

    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper


class DeliveryConfig(BaseModel):
    """Configuration for forwarding and retries."""

    timeout_seconds: float = Field(default=30.0, description="HTTP forward timeout")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial retry backoff")
    max_backoff_seconds: float = Field(default=30.0, description="Maximum retry backoff")
    backoff_multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")
    max_concurrent_deliveries: int = Field(default=100, description="Max concurrent deliveries")
    gate_on_health: bool = Field(
        default=True, description="Skip attempts to destinations known to be unhealthy"
    )


class IntakeConfig(BaseModel):
    """Configuration for event polling."""

    poll_interval_seconds: float = Field(default=5.0, description="Event poll interval")


class HealthConfig(BaseModel):
    """Configuration for destination liveness probing."""

    enabled: bool = Field(default=True, description="Enable destination probing")
    probe_timeout_seconds: float = Field(default=1.0, description="Probe timeout")
    healthy_interval_seconds: float = Field(default=5.0, description="Interval while healthy")
    unhealthy_interval_seconds: float = Field(default=2.0, description="Interval while unhealthy")


class DestinationConfig(BaseModel):
    """A named forwarding target."""

    name: str
    url: str
    ping: Union[bool, str] = True

    @field_validator("url", mode="before")
    @classmethod
    def normalize_destination_url(cls, v: Any) -> str:
        """Accept a string or a remote pattern object."""
        return normalize_url(v)

    @field_validator("ping", mode="before")
    @classmethod
    def normalize_ping(cls, v: Any) -> Union[bool, str]:
        if v is None:
            return True
        if isinstance(v, (bool, str)):
            return v
        return normalize_url(v)

    def to_destination(self) -> Destination:
        return Destination(name=self.name, url=self.url, ping=self.ping)


class DeliveryRuleConfig(BaseModel):
    """Routes a source label (or ``*``) to a destination name."""

    destination: str
    source: str = "*"

    def to_rule(self) -> DeliveryRule:
        return DeliveryRule(destination=self.destination, source=self.source)


class Config(BaseModel):
    """Main configuration object."""

    version: str = Field(default="0.1.0", description="Configuration version")
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    intake: IntakeConfig = Field(default_factory=IntakeConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    destination: List[DestinationConfig] = Field(default_factory=list)
    rules: List[DeliveryRuleConfig] = Field(default_factory=list, alias="delivery_rules")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def routing_table(self) -> "RoutingTable":
        return RoutingTable(
            destinations=tuple(d.to_destination() for d in self.destination),
            rules=tuple(r.to_rule() for r in self.rules),
        )


@dataclass(frozen=True)
class RoutingTable:
    """Immutable snapshot of destinations and delivery rules."""

    destinations: Tuple[Destination, ...] = ()
    rules: Tuple[DeliveryRule, ...] = ()
    generation: int = field(default=0, compare=False)

    def unresolved_rules(self) -> List[DeliveryRule]:
        names = {d.name for d in self.destinations}
        return [rule for rule in self.rules if rule.destination not in names]


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment variables.

    Args:
        config_path: Path to configuration file. If None, looks for
                    WEBHOOK_FORWARDER_CONFIG_PATH environment variable.

    Returns:
        Loaded and validated configuration

    Raises:
        FileNotFoundError: If config file specified but not found
        ConfigurationError: If configuration is invalid
    """
    if config_path is None:
        env_path = os.getenv("WEBHOOK_FORWARDER_CONFIG_PATH")
        if env_path:
            config_path = Path(env_path)

    config_data: Dict[str, Any] = {}
    if config_path and config_path.exists():
        try:
            with open(config_path, "r") as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e
    elif config_path:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    env_overrides: Dict[str, Any] = {}

    log_level = os.getenv("WEBHOOK_FORWARDER_LOG_LEVEL")
    if log_level:
        env_overrides.setdefault("server", {})["log_level"] = log_level

    if env_overrides:
        config_data = _deep_merge(config_data, env_overrides)

    try:
        return Config(**config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config in {config_path or 'defaults'}: {e}") from e


class ConfigReloader:
    """
    Serves the current routing table, reloading the file when it changes.

    A reload that fails validation keeps the last good table so the
    pipeline continues with the previous destinations and rules.
    """

    def __init__(self, config_path: Path, initial: Optional[Config] = None):
        self.config_path = config_path
        self._mtime: Optional[float] = None
        self._generation = 0
        self._table = RoutingTable()
        if initial is not None:
            self._table = initial.routing_table()
            self._mtime = self._current_mtime()

    def _current_mtime(self) -> Optional[float]:
        try:
            return self.config_path.stat().st_mtime
        except OSError:
            return None

    def __call__(self) -> RoutingTable:
        mtime = self._current_mtime()
        if mtime is None or mtime == self._mtime:
            return self._table

        self._mtime = mtime
        try:
            config = load_config(self.config_path)
        except (ConfigurationError, FileNotFoundError) as e:
            logger.error(
                "Config reload failed, keeping previous routing table",
                config_path=str(self.config_path),
                error=str(e),
            )
            return self._table

        self._generation += 1
        table = config.routing_table()
        self._table = RoutingTable(
            destinations=table.destinations,
            rules=table.rules,
            generation=self._generation,
        )
        logger.info(
            "Routing table reloaded",
            generation=self._generation,
            destinations=[d.name for d in self._table.destinations],
            rules=len(self._table.rules),
        )
        return self._table


def create_default_config(config_path: Path) -> None:
    """
    Create a default configuration file.

    Args:
        config_path: Path where to create the configuration file
    """
    default_config = {
        "version": "0.1.0",
        "broker": {
            "api_url": "https://api.unhook.sh",
            "api_key": "${WEBHOOK_FORWARDER_API_KEY}",
            "webhook_id": "${WEBHOOK_FORWARDER_WEBHOOK_ID}",
            "timeout_seconds": 30.0,
            "max_retries": 3,
        },
        "server": {"log_level": "INFO"},
        "delivery": {
            "timeout_seconds": 30.0,
            "initial_backoff_seconds": 1.0,
            "max_backoff_seconds": 30.0,
            "backoff_multiplier": 2.0,
            "max_concurrent_deliveries": 100,
            "gate_on_health": True,
        },
        "intake": {"poll_interval_seconds": 5.0},
        "health": {
            "enabled": True,
            "probe_timeout_seconds": 1.0,
            "healthy_interval_seconds": 5.0,
            "unhealthy_interval_seconds": 2.0,
        },
        "destination": [
            {"name": "local", "url": "http://localhost:3000/api/webhooks", "ping": True},
        ],
        "delivery_rules": [
            {"source": "*", "destination": "local"},
        ],
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(default_config, f, indent=2)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Override dictionary

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result
