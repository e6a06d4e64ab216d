"""
ReplyBus configuration — YAML file with environment overrides.

Nothing is hardcoded at call sites: broker location, TLS, timeouts and
defaults all come from ``config/replybus.yaml`` (or built-in defaults when
the file is absent). Credentials are read from environment variables whose
names are configurable.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import (
    DEFAULT_CONTENT_TYPE,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_SECONDS,
    ConnectionParameters,
    Credentials,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/replybus.yaml"

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def parse_bool(value: Any) -> bool:
    """Read a YAML or environment flag; quoted strings such as "false" are parsed, not truth-tested."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ValueError(f"Expected a boolean, got {value!r}")


class ReplyBusConfig:
    """Configuration loader for ReplyBus."""

    def __init__(self, config_path: Optional[str] = DEFAULT_CONFIG_PATH):
        self._config: Dict[str, Any] = {}
        if config_path and Path(config_path).exists():
            with open(config_path) as f:
                self._config = yaml.safe_load(f) or {}
            logger.debug(f"Loaded configuration from {config_path}")
        self._replybus = self._config.get("replybus", {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplyBusConfig":
        """Build a config from an already parsed mapping (no file access)."""
        config = cls(config_path=None)
        config._config = data
        config._replybus = data.get("replybus", {})
        return config

    def _section(self, name: str) -> Dict[str, Any]:
        return self._replybus.get(name, {}) or {}

    @property
    def rabbitmq_host(self) -> str:
        return os.getenv("REPLYBUS_HOST", self._section("rabbitmq").get("host", "localhost"))

    @property
    def rabbitmq_port(self) -> int:
        return int(os.getenv("REPLYBUS_PORT", self._section("rabbitmq").get("port", DEFAULT_PORT)))

    @property
    def rabbitmq_virtual_host(self) -> str:
        return self._section("rabbitmq").get("virtual_host", "/")

    @property
    def rabbitmq_use_ssl(self) -> bool:
        return parse_bool(self._section("rabbitmq").get("use_ssl", True))

    @property
    def rabbitmq_username(self) -> str:
        env_var = self._section("rabbitmq").get("username_env", "RABBITMQ_USER")
        default = self._section("rabbitmq").get("default_username", "guest")
        return os.getenv(env_var, default)

    @property
    def rabbitmq_password(self) -> str:
        env_var = self._section("rabbitmq").get("password_env", "RABBITMQ_PASSWORD")
        default = self._section("rabbitmq").get("default_password", "guest")
        return os.getenv(env_var, default)

    @property
    def connection_heartbeat_seconds(self) -> int:
        return self._section("connection").get("heartbeat_seconds", 300)

    @property
    def connection_blocked_timeout_seconds(self) -> int:
        return self._section("connection").get("blocked_connection_timeout_seconds", 300)

    @property
    def connection_socket_timeout_seconds(self) -> float:
        return self._section("connection").get("socket_timeout_seconds", 10)

    @property
    def operation_timeout_seconds(self) -> float:
        """Upper bound for one publish/subscribe/cancel round trip."""
        return self._section("connection").get("operation_timeout_seconds", 30)

    @property
    def default_timeout_seconds(self) -> float:
        return self._section("response").get("default_timeout_seconds", DEFAULT_TIMEOUT_SECONDS)

    @property
    def default_content_type(self) -> str:
        return self._section("message").get("default_content_type", DEFAULT_CONTENT_TYPE)

    def connection_parameters(self, **overrides: Any) -> ConnectionParameters:
        """
        Build ConnectionParameters from config, applying non-None overrides.

        Args:
            **overrides: host, port, username, password, use_ssl, virtual_host

        Returns:
            ConnectionParameters
        """
        def pick(name: str, default: Any) -> Any:
            value = overrides.get(name)
            return default if value is None else value

        return ConnectionParameters(
            host=pick("host", self.rabbitmq_host),
            port=pick("port", self.rabbitmq_port),
            credentials=Credentials(
                username=pick("username", self.rabbitmq_username),
                password=pick("password", self.rabbitmq_password),
            ),
            use_ssl=pick("use_ssl", self.rabbitmq_use_ssl),
            virtual_host=pick("virtual_host", self.rabbitmq_virtual_host),
        )
