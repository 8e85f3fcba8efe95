"""Container runtime access through the Docker SDK.

Wraps the calls one collection cycle makes against the runtime (list,
one-shot stats, inspect, logs) and the pure helpers that turn their JSON into
snapshot fields. Collection workers call these per target.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException

from conduit_expose.core.constants import LOG_TAIL_LINES
from conduit_expose.core.schemas import ContainerHealth
from conduit_expose.utils.numbers import bytes_to_mb, round2

logger = logging.getLogger(__name__)

# Errors a runtime call can raise: API errors plus transport errors (requests' are OSErrors)
RUNTIME_ERRORS = (DockerException, OSError)


@dataclass
class Target:
    """A discovered workload container."""

    id: str
    name: str
    state: str
    created: int = 0  # Unix timestamp
    pid: int = 0
    ip: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def is_running(self) -> bool:
        return self.state == "running"


def container_name(attrs: dict[str, Any]) -> str:
    """Return the cleaned first name of a container from list attributes."""
    names = attrs.get("Names") or []
    if names:
        return names[0].lstrip("/")
    return (attrs.get("Name") or "").lstrip("/")


def calculate_cpu_percent(stats: dict[str, Any]) -> float:
    """Calculate CPU percentage from a one-shot stats response.

    Uses the delta between `cpu_stats` and `precpu_stats`, scaled by the
    number of online CPUs.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu_stats = stats.get("precpu_stats") or {}
    cpu_usage = cpu_stats.get("cpu_usage") or {}

    cpu_delta = cpu_usage.get("total_usage", 0) - (precpu_stats.get("cpu_usage") or {}).get(
        "total_usage", 0
    )
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get(
        "system_cpu_usage", 0
    )

    num_cpus = cpu_stats.get("online_cpus") or len(cpu_usage.get("percpu_usage") or []) or 1

    if system_delta > 0 and cpu_delta >= 0:
        return round2(cpu_delta / system_delta * num_cpus * 100.0)
    return 0.0


def memory_usage_mb(stats: dict[str, Any]) -> float:
    usage = (stats.get("memory_stats") or {}).get("usage", 0)
    return round2(bytes_to_mb(usage))


def container_ip(inspect: dict[str, Any]) -> str | None:
    """Address of a container's metrics endpoint.

    Host-networked containers share the host stack and are reached on loopback.
    """
    host_config = inspect.get("HostConfig") or {}
    if host_config.get("NetworkMode") == "host":
        return "127.0.0.1"

    networks = (inspect.get("NetworkSettings") or {}).get("Networks") or {}
    for network in networks.values():
        ip = (network or {}).get("IPAddress")
        if ip:
            return ip
    return None


def container_pid(inspect: dict[str, Any]) -> int:
    return int((inspect.get("State") or {}).get("Pid") or 0)


def extract_auto_start(inspect: dict[str, Any]) -> bool:
    policy = ((inspect.get("HostConfig") or {}).get("RestartPolicy") or {}).get("Name", "")
    return policy in ("always", "unless-stopped")


def read_thread_count(status_path: Path) -> int:
    """Read the `Threads:` line of /proc/<pid>/status, 0 if unavailable."""
    try:
        with open(status_path, encoding="utf-8", errors="replace") as f:
            for line in f:
                if line.startswith("Threads:"):
                    fields = line.split()
                    return int(fields[1]) if len(fields) >= 2 else 0
    except (OSError, ValueError):
        return 0
    return 0


def collect_container_health(inspect: dict[str, Any], host_proc_path: Path) -> ContainerHealth:
    """Health indicators from inspect data plus the process's /proc entries."""
    state = inspect.get("State") or {}
    health = ContainerHealth(
        restart_count=int(inspect.get("RestartCount") or 0),
        oom_killed=bool(state.get("OOMKilled", False)),
    )

    pid = container_pid(inspect)
    if pid <= 0:
        return health

    proc_dir = Path(host_proc_path) / str(pid)
    try:
        health.fd_count = len(os.listdir(proc_dir / "fd"))
    except OSError as e:
        logger.debug(f"Cannot list {proc_dir / 'fd'}: {e}")
    health.thread_count = read_thread_count(proc_dir / "status")
    return health


def format_uptime(seconds: float) -> str:
    """Format whole seconds like Go's Duration.String (`1h2m3s`, `4m0s`, `59s`)."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class DockerRuntime:
    """Thin adapter over a `docker.DockerClient`.

    Example:
        ```python
        runtime = DockerRuntime.from_env(timeout=5.0)
        runtime.ping()
        for target in runtime.discover(image, "conduit", "abc123", "conduit-expose"):
            stats = runtime.stats(target.id)
        ```
    """

    def __init__(self, client: docker.DockerClient) -> None:
        self._client = client

    @classmethod
    def from_env(cls, timeout: float) -> DockerRuntime:
        """Create a client from DOCKER_HOST & co; `timeout` bounds every request."""
        return cls(docker.from_env(timeout=timeout))

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()

    def _list(self, filters: dict[str, str]) -> list[Target]:
        containers = self._client.containers.list(all=True, filters=filters, sparse=True)
        return [
            Target(
                id=c.id,
                name=container_name(c.attrs),
                state=c.attrs.get("State", ""),
                created=int(c.attrs.get("Created") or 0),
            )
            for c in containers
        ]

    def discover(
        self,
        image: str,
        name_prefix: str,
        self_hostname: str,
        self_name: str,
    ) -> list[Target]:
        """Union of containers by image and by name prefix, excluding ourselves.

        The runtime sets a container's hostname to its short id, so any target
        whose id starts with our hostname is this agent.

        Raises:
            DockerException, OSError: If either list call fails
        """
        seen: dict[str, Target] = {}
        for target in self._list({"ancestor": image}) + self._list({"name": name_prefix}):
            seen.setdefault(target.id, target)

        result = []
        for target in seen.values():
            if self_hostname and target.id.startswith(self_hostname):
                continue
            if target.name == self_name:
                continue
            result.append(target)
        return result

    def stats(self, container_id: str) -> dict[str, Any]:
        """One-shot resource usage (includes `precpu_stats` for the CPU delta)."""
        return self._client.api.stats(container_id, stream=False)

    def inspect(self, container_id: str) -> dict[str, Any]:
        return self._client.api.inspect_container(container_id)

    def logs(self, container_id: str, tail: int = LOG_TAIL_LINES) -> bytes:
        return self._client.api.logs(container_id, stdout=True, stderr=True, tail=tail)
