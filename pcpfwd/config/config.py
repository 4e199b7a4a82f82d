"""Configuration management for pcpfwd.

Provides centralized configuration with TOML support, validation and
hierarchical loading from defaults → config file → environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import toml

from pcpfwd.models import Config, ObservabilityConfig, PCPConfig
from pcpfwd.utils.exceptions import ConfigurationError
from pcpfwd.utils.logging_config import setup_logging

CONFIG_FILENAME = "pcpfwd.toml"

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    "PCPFWD_GATEWAY": "pcp.gateway",
    "PCPFWD_GATEWAY_PORT": "pcp.gateway_port",
    "PCPFWD_LOCAL_IP": "pcp.local_ip",
    "PCPFWD_BIND_ADDRESS": "pcp.bind_address",
    "PCPFWD_RECV_TIMEOUT": "pcp.recv_timeout",
    "PCPFWD_MAPPING_LIFETIME": "pcp.mapping_lifetime",
    "PCPFWD_RENEWAL_FRACTION": "pcp.renewal_fraction",
    "PCPFWD_RENEWAL_BACKOFF_BASE": "pcp.renewal_backoff_base",
    "PCPFWD_RENEWAL_BACKOFF_MAX": "pcp.renewal_backoff_max",
    "PCPFWD_RELEASE_ON_SHUTDOWN": "pcp.release_on_shutdown",
    "PCPFWD_COMMAND_QUEUE_SIZE": "pcp.command_queue_size",
    "PCPFWD_LOG_LEVEL": "observability.log_level",
    "PCPFWD_LOG_FILE": "observability.log_file",
    "PCPFWD_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Paths that stay strings even when they look like numbers
_STRING_PATHS = {
    "pcp.gateway",
    "pcp.local_ip",
    "pcp.bind_address",
    "observability.log_file",
}

# Global configuration instance
_config_manager: ConfigManager | None = None


def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
    if path in _STRING_PATHS:
        return raw
    if path == "observability.log_level":
        return raw.upper()
    low = raw.lower()
    if low in {"true", "1", "yes", "on"}:
        return True
    if low in {"false", "0", "no", "off"}:
        return False
    try:
        if "." in raw:
            return float(raw)
        return int(raw)
    except ValueError:
        return raw


def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    cur = d
    for p in parts[:-1]:
        cur = cur.setdefault(p, {})
    cur[parts[-1]] = value


class ConfigManager:
    """Loads and validates configuration."""

    def __init__(self, config_file: str | Path | None = None):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for
                pcpfwd.toml

        Raises:
            ConfigurationError: If the file or environment holds invalid values

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()

    def _find_config_file(self, config_file: str | Path | None) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            return Path(config_file)

        search_paths = [
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".config" / "pcpfwd" / CONFIG_FILENAME,
        ]
        for path in search_paths:
            if path.exists():
                return path
        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file is not None:
            if not self.config_file.exists():
                msg = f"Config file not found: {self.config_file}"
                raise ConfigurationError(msg)
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg) from e

        config_data = self._merge_config(config_data, self._get_env_config())

        try:
            return Config(**config_data)
        except (TypeError, ValueError) as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}
        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))
        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def export(self) -> str:
        """Export the current configuration as TOML."""
        return toml.dumps(self.config.model_dump(mode="json", exclude_none=True))

    def setup_logging(self) -> None:
        """Set up logging from the observability section."""
        setup_logging(self.config.observability)


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Reconfigures logging based on the new config.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    _config_manager.config = new_config
    _config_manager.setup_logging()
    logging.getLogger(__name__).debug("Configuration replaced")


def reset_config() -> None:
    """Forget the global configuration, the next access reloads it."""
    global _config_manager
    _config_manager = None


def get_pcp_config() -> PCPConfig:
    return get_config().pcp


def get_observability_config() -> ObservabilityConfig:
    return get_config().observability
