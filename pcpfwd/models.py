"""Pydantic models for pcpfwd configuration.

Provides validated configuration with defaults suited to a gateway on the
local network.
"""

from __future__ import annotations

import ipaddress
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class PCPConfig(BaseModel):
    """PCP client and mapping manager configuration."""

    gateway: str | None = Field(
        default=None,
        description="PCP server IPv4 address (None to use the default route gateway)",
    )
    gateway_port: int = Field(
        default=5351,
        ge=1,
        le=65535,
        description="PCP server port",
    )
    local_ip: str | None = Field(
        default=None,
        description="Local IPv4 address mappings point to (None to detect)",
    )
    bind_address: str = Field(
        default="0.0.0.0",  # nosec B104 - client socket
        description="Address to bind the PCP client socket to",
    )
    recv_timeout: float = Field(
        default=0.5,
        gt=0.0,
        le=30.0,
        description="Seconds to wait for a PCP response",
    )
    mapping_lifetime: int = Field(
        default=7200,
        ge=1,
        le=0xFFFFFFFF,
        description="Requested mapping lifetime in seconds",
    )
    renewal_fraction: float = Field(
        default=0.5,
        gt=0.0,
        lt=1.0,
        description="Fraction of the granted lifetime after which a mapping is renewed",
    )
    renewal_backoff_base: float = Field(
        default=1.0,
        gt=0.0,
        description="First delay in seconds before retrying a failed renewal",
    )
    renewal_backoff_max: float = Field(
        default=60.0,
        gt=0.0,
        description="Maximum delay in seconds between renewal retries",
    )
    release_on_shutdown: bool = Field(
        default=True,
        description="Release all mappings at the gateway when the manager stops",
    )
    command_queue_size: int = Field(
        default=1024,
        ge=1,
        description="Maximum number of queued mapping commands",
    )

    @field_validator("gateway", "local_ip")
    @classmethod
    def validate_ipv4(cls, v: str | None) -> str | None:
        """Validate optional IPv4 addresses."""
        if v is None:
            return v
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            msg = f"Invalid IPv4 address: {v}"
            raise ValueError(msg) from e
        return v


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines instead of human readable output",
    )


class Config(BaseModel):
    """Top-level pcpfwd configuration."""

    pcp: PCPConfig = Field(default_factory=PCPConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
