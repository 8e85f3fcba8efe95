"""Shared constants for conduit-expose.

Centralized defaults so the config model, collectors and tests agree.
"""

from __future__ import annotations

# Runtime discovery
CONDUIT_IMAGE = "ghcr.io/psiphon-inc/conduit/cli"
CONDUIT_NAME_PREFIX = "conduit"
# Our own container name, never treated as a target
SELF_CONTAINER_NAME = "conduit-expose"

# Defaults for AgentConfig
DEFAULT_LISTEN_ADDR = ":8081"
DEFAULT_METRICS_PORT = 9090
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_DOCKER_TIMEOUT_SECONDS = 5.0
DEFAULT_METRICS_TIMEOUT_SECONDS = 3.0
DEFAULT_MAX_WORKERS = 10
DEFAULT_HOST_PROC_PATH = "/host/proc"
DEFAULT_HOST_ROOT_PATH = "/host/root"
DEFAULT_GEOIP_PATH = "/data/GeoLite2-Country.mmdb"
DEFAULT_MANAGER_DATA_PATH = "/host/root/opt/conduit"

# HTTP boundary
AUTH_HEADER = "X-Conduit-Auth"

# Snowflake proxies listen on 127.0.0.1:(SNOWFLAKE_BASE_PORT - i) for i = 1..count
SNOWFLAKE_BASE_PORT = 10001
SNOWFLAKE_METRICS_PATH = "/internal/metrics"

# Number of log lines scanned for the [STATS] fallback
LOG_TAIL_LINES = 200

# Country code used when GeoIP has no answer for an address
UNKNOWN_COUNTRY = "XX"

# TCP states from /proc/net/tcp (hex state code -> name)
TCP_STATES: dict[str, str] = {
    "01": "established",
    "02": "syn_sent",
    "03": "syn_recv",
    "04": "fin_wait1",
    "05": "fin_wait2",
    "06": "time_wait",
    "07": "close",
    "08": "close_wait",
    "09": "last_ack",
    "0A": "listen",
    "0B": "closing",
}
TCP_ESTABLISHED = "01"
