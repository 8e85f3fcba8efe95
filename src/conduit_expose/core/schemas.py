"""Pydantic schemas for conduit-expose.

This module defines the data contracts of the published snapshot: per-container
information, host metrics, merged connection/country statistics and the
session aggregate. The HTTP layer serializes `StatusResponse` as-is.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AppMetrics(BaseModel):
    """Application metrics reported by a single Conduit container."""

    connected_clients: int = Field(default=0, ge=0)
    connecting_clients: int = Field(default=0, ge=0)
    announcing: int = Field(default=0, ge=0)
    is_live: bool = Field(default=False)
    bytes_uploaded: float = Field(default=0.0, ge=0)
    bytes_downloaded: float = Field(default=0.0, ge=0)
    uptime_seconds: float = Field(default=0.0, ge=0)
    idle_seconds: float = Field(default=0.0, ge=0)


class ContainerSettings(BaseModel):
    """Configuration extracted from metrics gauges and runtime inspect data."""

    max_clients: int = Field(default=0, ge=0)
    bandwidth_limit_mbps: float = Field(default=0.0, ge=0)
    auto_start: bool = Field(default=False)

    def is_empty(self) -> bool:
        return self.max_clients == 0 and self.bandwidth_limit_mbps == 0 and not self.auto_start


class ContainerHealth(BaseModel):
    """Health indicators for a single container (runtime inspect + /proc)."""

    restart_count: int = Field(default=0, ge=0)
    oom_killed: bool = Field(default=False)
    fd_count: int = Field(default=0, ge=0)
    thread_count: int = Field(default=0, ge=0)


class SystemMetrics(BaseModel):
    """Host-level resource usage."""

    cpu_percent: float = 0.0
    memory_used_mb: float = Field(default=0.0, ge=0)
    memory_total_mb: float = Field(default=0.0, ge=0)
    load_avg_1m: float = Field(default=0.0, ge=0)
    load_avg_5m: float = Field(default=0.0, ge=0)
    load_avg_15m: float = Field(default=0.0, ge=0)
    disk_used_gb: float = Field(default=0.0, ge=0)
    disk_total_gb: float = Field(default=0.0, ge=0)
    # Rates and deltas may go negative across a counter wrap; not clamped here
    net_in_mbps: float = 0.0
    net_out_mbps: float = 0.0
    net_errors: int = 0
    net_drops: int = 0


class ConnectionStats(BaseModel):
    """TCP connection summary; per-state counts never exceed total."""

    total: int = Field(default=0, ge=0)
    unique_ips: int = Field(default=0, ge=0)
    states: dict[str, int] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return self.total == 0 and self.unique_ips == 0 and not any(self.states.values())


class CountryStats(BaseModel):
    """Connection (or client) count for a single country."""

    country: str
    connections: int = Field(default=0, ge=0)


class CountryTrafficStats(BaseModel):
    """Cumulative traffic for a single country, from the manager's data files."""

    country: str
    from_bytes: float = Field(default=0.0, ge=0)
    to_bytes: float = Field(default=0.0, ge=0)


class SessionInfo(BaseModel):
    """Rolling aggregation since the last detected restart."""

    start_time: int = Field(default=0, ge=0, description="Unix timestamp")
    peak_connections: int = Field(default=0, ge=0)
    avg_connections: float = Field(default=0.0, ge=0)
    total_upload_bytes: float = Field(default=0.0, ge=0)
    total_download_bytes: float = Field(default=0.0, ge=0)


class SnowflakeMetrics(BaseModel):
    """Summed metrics of the Snowflake proxy fleet."""

    total_connections: int = Field(default=0, ge=0)
    timeouts_total: int = Field(default=0, ge=0)
    inbound_bytes: float = Field(default=0.0, ge=0)
    outbound_bytes: float = Field(default=0.0, ge=0)


class ContainerInfo(BaseModel):
    """One container's collected data.

    Built by a single collection worker; any step that fails leaves its field
    as None and the container is still reported.
    """

    id: str
    name: str
    status: str = Field(default="down", description="running, down or unhealthy")
    cpu_percent: float = Field(default=0.0, ge=0)
    memory_mb: float = Field(default=0.0, ge=0)
    uptime: str = Field(default="0s")
    health: ContainerHealth | None = None
    app_metrics: AppMetrics | None = None
    settings: ContainerSettings | None = None


class StatusResponse(BaseModel):
    """Aggregated snapshot of one collection cycle.

    Frozen: a published snapshot is never modified, the next cycle replaces it.
    """

    model_config = {"frozen": True}

    server_id: str
    timestamp: int
    total_containers: int = Field(default=0, ge=0)
    connected_clients: int = Field(default=0, ge=0)
    connecting_clients: int = Field(default=0, ge=0)
    system: SystemMetrics | None = None
    settings: ContainerSettings | None = None
    session: SessionInfo | None = None
    connections: ConnectionStats | None = None
    clients_by_country: list[CountryStats] | None = None
    traffic_by_country: list[CountryTrafficStats] | None = None
    snowflake: SnowflakeMetrics | None = None
    manager_available: bool = False
    containers: list[ContainerInfo] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize for the HTTP layer, omitting absent top-level sections.

        Per-container fields keep explicit nulls so readers can tell a missing
        sub-result from an absent container.
        """
        data = self.model_dump(mode="json")
        return {key: value for key, value in data.items() if value is not None}
