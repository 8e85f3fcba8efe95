"""Core module - configuration, constants and schemas."""

from __future__ import annotations

from conduit_expose.core.config import AgentConfig, load_config, parse_duration
from conduit_expose.core.schemas import (
    AppMetrics,
    ConnectionStats,
    ContainerHealth,
    ContainerInfo,
    ContainerSettings,
    CountryStats,
    CountryTrafficStats,
    SessionInfo,
    SnowflakeMetrics,
    StatusResponse,
    SystemMetrics,
)

__all__ = [
    "AgentConfig",
    "AppMetrics",
    "ConnectionStats",
    "ContainerHealth",
    "ContainerInfo",
    "ContainerSettings",
    "CountryStats",
    "CountryTrafficStats",
    "SessionInfo",
    "SnowflakeMetrics",
    "StatusResponse",
    "SystemMetrics",
    "load_config",
    "parse_duration",
]
