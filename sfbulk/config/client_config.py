"""
Client configuration and its YAML loader.

The transport and bulk clients only ever see a ClientConfig made of plain
values. Files and environment variables are read here and nowhere else.

Usage:
    from sfbulk.config.client_config import load_client_config

    config = load_client_config()              # SFBULK_CONFIG_PATH or ./config/sfbulk.yml
    config = load_client_config("bulk.yml")    # explicit file

Example sfbulk.yml:

    api_version: "62.0"
    timeout_seconds: 60
    poll_interval_seconds: 5
    max_wait_seconds: 1800
    compression:
      compress_requests: true
    retry:
      max_attempts: 5
      base_delay_seconds: 1.0
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from sfbulk.integrations.salesforce.retry import RetryConfig

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV_VAR = "SFBULK_CONFIG_PATH"
DEFAULT_CONFIG_FILENAME = "sfbulk.yml"

DEFAULT_API_VERSION = "62.0"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONNECTIONS = 20
DEFAULT_MAX_KEEPALIVE_CONNECTIONS = 10
DEFAULT_KEEPALIVE_EXPIRY_SECONDS = 90.0
DEFAULT_USER_AGENT = "sfbulk/0.1.0"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_WAIT_SECONDS = 3600.0
DEFAULT_POLL_JITTER = 0.2


@dataclass(frozen=True)
class CompressionConfig:
    """
    HTTP compression settings.

    Attributes:
        accept_compressed: Send Accept-Encoding: gzip, deflate
        compress_requests: Gzip request bodies
        min_size: Smallest body (bytes) worth compressing
    """
    accept_compressed: bool = True
    compress_requests: bool = False
    min_size: int = 1024

    @classmethod
    def disabled(cls) -> "CompressionConfig":
        return cls(accept_compressed=False, compress_requests=False, min_size=0)


@dataclass(frozen=True)
class ClientConfig:
    """Plain-value configuration consumed by SalesforceClient and BulkApiClient."""

    api_version: str = DEFAULT_API_VERSION
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    max_keepalive_connections: int = DEFAULT_MAX_KEEPALIVE_CONNECTIONS
    keepalive_expiry_seconds: float = DEFAULT_KEEPALIVE_EXPIRY_SECONDS
    user_agent: str = DEFAULT_USER_AGENT
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    retry: Optional[RetryConfig] = field(default_factory=RetryConfig)
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    poll_jitter: float = DEFAULT_POLL_JITTER

    def __post_init__(self):
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.max_wait_seconds <= 0:
            raise ValueError("max_wait_seconds must be positive")
        if self.poll_jitter < 0:
            raise ValueError("poll_jitter must not be negative")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientConfig":
        """
        Build a config from a parsed mapping, ignoring unknown keys.

        ``retry: null`` (or ``retry: false``) disables retries entirely.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown client config keys: %s", unknown)

        values = {k: v for k, v in data.items() if k in known}

        if "api_version" in values:
            values["api_version"] = str(values["api_version"])

        if "compression" in values:
            values["compression"] = CompressionConfig(**(values["compression"] or {}))

        if "retry" in values:
            retry = values["retry"]
            values["retry"] = RetryConfig(**retry) if retry else None

        return cls(**values)


def _resolve_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)

    env_path = os.getenv(CONFIG_PATH_ENV_VAR)
    if env_path:
        return Path(env_path)

    candidate = Path(os.getcwd()) / "config" / DEFAULT_CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


def load_client_config(config_path: Optional[str] = None) -> ClientConfig:
    """
    Load ClientConfig from YAML.

    Args:
        config_path: Explicit file path (default: SFBULK_CONFIG_PATH env var,
            then ./config/sfbulk.yml)

    Returns:
        Parsed ClientConfig, or defaults when no file is found

    Raises:
        FileNotFoundError: If an explicitly requested file does not exist
        ValueError: If the file does not hold a mapping
    """
    path = _resolve_path(config_path)

    if path is None:
        logger.warning("sfbulk config file not found, using defaults")
        return ClientConfig()

    logger.info("Loading sfbulk config from %s", path)

    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"sfbulk config at {path} must be a mapping")

    return ClientConfig.from_dict(raw)
