"""Configuration loading for conduit-expose.

Settings come from an optional YAML or JSON file, then from CONDUIT_*
environment variables, and are validated by the `AgentConfig` schema.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from conduit_expose.core import constants

logger = logging.getLogger(__name__)


class AgentConfig(BaseModel):
    """Runtime configuration of the agent."""

    listen_addr: str = Field(default=constants.DEFAULT_LISTEN_ADDR)
    auth_secret: str = Field(default="", repr=False, description="Required by `serve`")
    metrics_port: int = Field(default=constants.DEFAULT_METRICS_PORT, ge=1, le=65535)
    metrics_path: str = Field(default=constants.DEFAULT_METRICS_PATH)
    poll_interval_seconds: float = Field(default=constants.DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    docker_timeout_seconds: float = Field(default=constants.DEFAULT_DOCKER_TIMEOUT_SECONDS, gt=0)
    metrics_timeout_seconds: float = Field(
        default=constants.DEFAULT_METRICS_TIMEOUT_SECONDS, gt=0
    )
    max_workers: int = Field(default=constants.DEFAULT_MAX_WORKERS, ge=1, le=256)
    host_proc_path: Path = Field(default=Path(constants.DEFAULT_HOST_PROC_PATH))
    host_root_path: Path = Field(default=Path(constants.DEFAULT_HOST_ROOT_PATH))
    geoip_path: Path = Field(default=Path(constants.DEFAULT_GEOIP_PATH))
    manager_data_path: Path = Field(default=Path(constants.DEFAULT_MANAGER_DATA_PATH))
    container_image: str = Field(default=constants.CONDUIT_IMAGE, min_length=1)
    container_name_prefix: str = Field(default=constants.CONDUIT_NAME_PREFIX, min_length=1)
    self_name: str = Field(default=constants.SELF_CONTAINER_NAME, min_length=1)

    @property
    def listen_host_port(self) -> tuple[str, int]:
        """Split `listen_addr` (`host:port` or `:port`) for the HTTP server."""
        host, _, port = self.listen_addr.rpartition(":")
        return host or "0.0.0.0", int(port)


# env var -> (field, kind)
_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "CONDUIT_LISTEN_ADDR": ("listen_addr", "str"),
    "CONDUIT_AUTH_SECRET": ("auth_secret", "str"),
    "CONDUIT_METRICS_PORT": ("metrics_port", "int"),
    "CONDUIT_METRICS_PATH": ("metrics_path", "str"),
    "CONDUIT_POLL_INTERVAL": ("poll_interval_seconds", "duration"),
    "CONDUIT_MAX_WORKERS": ("max_workers", "int"),
    "CONDUIT_HOST_PROC": ("host_proc_path", "str"),
    "CONDUIT_HOST_ROOT": ("host_root_path", "str"),
    "CONDUIT_GEOIP_PATH": ("geoip_path", "str"),
    "CONDUIT_MANAGER_DATA": ("manager_data_path", "str"),
}

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration (`15s`, `1m30s`, `500ms`) or bare seconds.

    Raises:
        ValueError: If the string is not a valid duration
    """
    value = value.strip()
    try:
        return float(value)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(value):
        raise ValueError(f"Invalid duration: {value!r}")
    return total


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, (field, kind) in _ENV_FIELDS.items():
        raw = env.get(key, "")
        if raw == "":
            continue
        if kind == "str":
            overrides[field] = raw
            continue
        try:
            overrides[field] = int(raw) if kind == "int" else parse_duration(raw)
        except ValueError:
            logger.warning(f"Invalid value for {key}={raw!r}, using default")
    return overrides


def load_config(
    path: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> AgentConfig:
    """Load and validate the agent configuration.

    Args:
        path: Optional YAML or JSON configuration file
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated AgentConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported
        pydantic.ValidationError: If config is invalid
    """
    data: dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        suffix = path.suffix.lower()
        with open(path, encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json")

    data.update(_env_overrides(os.environ if env is None else env))
    return AgentConfig.model_validate(data)
