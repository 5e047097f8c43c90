"""
geyser-stream Configuration
===========================

This module handles configuration loading for the Geyser stream client.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    GEYSER_ENDPOINT                -> endpoint.url
    GEYSER_X_TOKEN                 -> endpoint.x_token
    GEYSER_COMMITMENT              -> subscription.commitment
    GEYSER_KEEPALIVE_TIMEOUT       -> stream.keepalive_timeout_seconds
    GEYSER_CHANNEL_MAXSIZE         -> stream.channel_maxsize
    GEYSER_RECONNECT_BASE_MS       -> reconnect.base_delay_ms
    GEYSER_RECONNECT_MAX_MS        -> reconnect.max_delay_ms
    GEYSER_MAX_RECONNECT_ATTEMPTS  -> reconnect.max_attempts
    GEYSER_LOG_LEVEL               -> logging.level
    PORT / GEYSER_PORT             -> server.port

Example:
    from geyser_stream.config import load_config, setup_logging

    settings = load_config()
    setup_logging(settings)
    print(settings.endpoint.url)
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from geyser_stream.models.subscription import CommitmentLevel, DataSlice
from geyser_stream.models.update import UpdateKind


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class EndpointConfig(BaseModel):
    """Geyser gRPC endpoint and channel configuration."""

    url: str = Field(
        default="http://127.0.0.1:10000",
        description="Endpoint URL; https:// enables TLS",
    )
    x_token: Optional[str] = Field(
        default=None,
        description="Access token sent as x-token metadata",
    )
    ca_certificate: Optional[str] = Field(
        default=None,
        description="Path to a PEM CA bundle for TLS (system roots if unset)",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Time allowed for the channel to become ready",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Deadline for unary query calls",
    )
    max_decoding_message_size: int = Field(
        default=1024 * 1024 * 1024,
        ge=1024,
        description="Largest inbound message in bytes",
    )
    compression: Optional[Literal["gzip"]] = Field(
        default=None,
        description="Channel compression: 'gzip' or none",
    )
    keepalive_interval_ms: int = Field(
        default=30_000,
        ge=1_000,
        description="HTTP/2 keepalive ping interval",
    )
    keepalive_timeout_ms: int = Field(
        default=5_000,
        ge=100,
        description="HTTP/2 keepalive ping ack timeout",
    )
    keepalive_while_idle: bool = Field(
        default=True,
        description="Send keepalive pings without active calls",
    )


class SubscriptionConfig(BaseModel):
    """Initial subscription, in config-file form."""

    commitment: Optional[CommitmentLevel] = Field(
        default=CommitmentLevel.PROCESSED,
        description="Commitment level for the subscription",
    )
    filters: Dict[str, Dict[str, Dict[str, Any]]] = Field(
        default_factory=lambda: {"slots": {"client": {}}},
        description="kind -> filter name -> predicate fields",
    )
    accounts_data_slice: List[DataSlice] = Field(default_factory=list)
    from_slot: Optional[int] = Field(default=None, ge=0)


class StreamConfig(BaseModel):
    """Subscribe stream behaviour."""

    keepalive_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Max silence (no frames, including pings) before reconnecting",
    )
    channel_maxsize: int = Field(
        default=1024,
        ge=1,
        description="Capacity of the consumer update channel",
    )
    outbound_maxsize: int = Field(
        default=16,
        ge=1,
        description="Capacity of the outbound request queue",
    )
    reply_to_ping: bool = Field(
        default=True,
        description="Answer server pings so load balancers keep the stream open",
    )
    deliver_unknown: bool = Field(
        default=False,
        description="Deliver UNKNOWN updates to the consumer instead of only counting them",
    )
    deliver_keepalive: bool = Field(
        default=False,
        description="Deliver PING/PONG updates to the consumer instead of only counting them",
    )


class ReconnectConfig(BaseModel):
    """Reconnect backoff configuration."""

    base_delay_ms: int = Field(
        default=500,
        ge=1,
        description="Delay before the first reconnect attempt",
    )
    max_delay_ms: int = Field(
        default=30_000,
        ge=1,
        description="Upper bound of the exponential delay",
    )
    jitter_fraction: float = Field(
        default=0.1,
        ge=0,
        le=1.0,
        description="Random extra delay as a fraction of the computed delay",
    )
    max_attempts: int = Field(
        default=0,
        ge=0,
        description="Maximum consecutive failed attempts (0 = unlimited)",
    )


class GateConfig(BaseModel):
    """Commitment gate configuration."""

    policies: Dict[UpdateKind, Literal["pass_through", "monotonic_slot"]] = Field(
        default_factory=dict,
        description="Per-kind policy; unlisted kinds pass through",
    )
    reset_on_reconnect: bool = Field(
        default=True,
        description="Forget seen slots when a new session starts",
    )


class ServerConfig(BaseModel):
    """Relay server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8002, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for geyser-stream.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Build Settings from an optional YAML file plus GEYSER_* variables.

    Environment variables win over the file, which wins over the model
    defaults. Without an explicit path, GEYSER_CONFIG is consulted, then
    config.yaml / config.yml in the working directory and the project root.

    Args:
        config_path: Explicit YAML file to read.

    Returns:
        Settings: Validated configuration
    """
    if config_path is None:
        config_path = os.environ.get("GEYSER_CONFIG")
    if config_path is None:
        project_root = Path(__file__).resolve().parents[2]
        candidates = (Path("config.yaml"), Path("config.yml"), project_root / "config.yaml")
        for path in candidates:
            if path.exists():
                config_path = str(path)
                break

    config_data: Dict[str, Any] = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file, using defaults plus environment overrides")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Overlay GEYSER_* (and PORT) variables onto the raw config dict."""

    # Endpoint settings
    if env_url := os.environ.get("GEYSER_ENDPOINT"):
        config_data.setdefault("endpoint", {})["url"] = env_url
    if env_token := os.environ.get("GEYSER_X_TOKEN"):
        config_data.setdefault("endpoint", {})["x_token"] = env_token

    # Subscription settings
    if env_commitment := os.environ.get("GEYSER_COMMITMENT"):
        config_data.setdefault("subscription", {})["commitment"] = env_commitment.lower()

    # Stream settings
    if env_keepalive := os.environ.get("GEYSER_KEEPALIVE_TIMEOUT"):
        config_data.setdefault("stream", {})["keepalive_timeout_seconds"] = float(env_keepalive)
    if env_maxsize := os.environ.get("GEYSER_CHANNEL_MAXSIZE"):
        config_data.setdefault("stream", {})["channel_maxsize"] = int(env_maxsize)

    # Reconnect settings
    if env_base := os.environ.get("GEYSER_RECONNECT_BASE_MS"):
        config_data.setdefault("reconnect", {})["base_delay_ms"] = int(env_base)
    if env_max := os.environ.get("GEYSER_RECONNECT_MAX_MS"):
        config_data.setdefault("reconnect", {})["max_delay_ms"] = int(env_max)
    if env_attempts := os.environ.get("GEYSER_MAX_RECONNECT_ATTEMPTS"):
        config_data.setdefault("reconnect", {})["max_attempts"] = int(env_attempts)

    # Server settings (a platform-provided PORT wins over GEYSER_PORT)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("GEYSER_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("GEYSER_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Install the root handler for the configured level and format."""
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        fmt = (
            '{"ts": "%(asctime)s", "level": "%(levelname)s", '
            '"logger": "%(name)s", "msg": "%(message)s"}'
        )
    else:
        fmt = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

    logging.basicConfig(level=level, format=fmt, datefmt="%Y-%m-%d %H:%M:%S")
