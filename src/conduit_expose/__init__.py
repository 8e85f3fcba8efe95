"""conduit-expose - Telemetry agent for a fleet of Conduit containers."""

from __future__ import annotations

from conduit_expose.core.config import AgentConfig, load_config
from conduit_expose.core.schemas import ContainerInfo, SessionInfo, StatusResponse

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "ContainerInfo",
    "SessionInfo",
    "StatusResponse",
    "load_config",
    "__version__",
]
