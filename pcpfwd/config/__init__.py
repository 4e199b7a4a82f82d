"""Configuration loading for pcpfwd."""

from pcpfwd.config.config import (
    ConfigManager,
    get_config,
    get_observability_config,
    get_pcp_config,
    init_config,
    reset_config,
    set_config,
)

__all__ = [
    "ConfigManager",
    "get_config",
    "get_observability_config",
    "get_pcp_config",
    "init_config",
    "reset_config",
    "set_config",
]
