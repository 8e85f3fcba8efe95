"""Monitoring module - Data sources sampled each collection cycle.

Provides one collector per source:
- HostSystemCollector: host CPU, memory, load, network and disk from /proc
- DockerRuntime: discovery and per-container stats/inspect/logs
- Connection table decoding, Prometheus text parsing, [STATS] log fallback
- Manager state files, GeoIP resolution, Snowflake proxy metrics

Cross-cycle state:
- CPURateState / NetworkRateState: counter deltas into rates
- SessionTracker: peak/average connections with restart detection
"""

from __future__ import annotations

from conduit_expose.monitoring.connections import (
    ConnectionRecord,
    collect_container_connections,
    decode_hex_address,
    merge_connection_stats,
    merge_country_stats,
    parse_tcp_table,
    summarize_connections,
)
from conduit_expose.monitoring.docker_collector import DockerRuntime, Target
from conduit_expose.monitoring.geoip import GeoIPResolver
from conduit_expose.monitoring.log_stats import app_metrics_from_logs, parse_stats_line
from conduit_expose.monitoring.manager_files import ManagerData, ManagerSettings, read_manager_data
from conduit_expose.monitoring.prometheus import (
    MetricsUnavailableError,
    fetch_metrics_text,
    parse_conduit_metrics,
    parse_snowflake_metrics,
)
from conduit_expose.monitoring.rates import (
    CPURateState,
    CPUTicks,
    NetCounters,
    NetRates,
    NetworkRateState,
    compute_cpu_percent,
    compute_mbps,
)
from conduit_expose.monitoring.session import SessionTracker
from conduit_expose.monitoring.snowflake import collect_snowflake_metrics
from conduit_expose.monitoring.system_collector import HostSystemCollector

__all__ = [
    "CPURateState",
    "CPUTicks",
    "ConnectionRecord",
    "DockerRuntime",
    "GeoIPResolver",
    "HostSystemCollector",
    "ManagerData",
    "ManagerSettings",
    "MetricsUnavailableError",
    "NetCounters",
    "NetRates",
    "NetworkRateState",
    "SessionTracker",
    "Target",
    "app_metrics_from_logs",
    "collect_container_connections",
    "collect_snowflake_metrics",
    "compute_cpu_percent",
    "compute_mbps",
    "decode_hex_address",
    "fetch_metrics_text",
    "merge_connection_stats",
    "merge_country_stats",
    "parse_conduit_metrics",
    "parse_snowflake_metrics",
    "parse_stats_line",
    "parse_tcp_table",
    "read_manager_data",
    "summarize_connections",
]
