"""Metrics of the auxiliary Snowflake proxy fleet.

Snowflake containers run with host networking and expose Prometheus metrics
on loopback: snowflake-1 on port 10000, snowflake-2 on 9999, and so on.
"""

from __future__ import annotations

import logging

from conduit_expose.core.constants import SNOWFLAKE_BASE_PORT, SNOWFLAKE_METRICS_PATH
from conduit_expose.core.schemas import SnowflakeMetrics
from conduit_expose.monitoring.prometheus import (
    MetricsUnavailableError,
    fetch_metrics_text,
    parse_snowflake_metrics,
)

logger = logging.getLogger(__name__)


def snowflake_metrics_url(index: int, host: str = "127.0.0.1") -> str:
    """URL of the metrics endpoint of snowflake-`index` (1-based)."""
    return f"http://{host}:{SNOWFLAKE_BASE_PORT - index}{SNOWFLAKE_METRICS_PATH}"


def collect_snowflake_metrics(count: int, timeout: float) -> SnowflakeMetrics | None:
    """Scrape `count` Snowflake proxies and sum their counters.

    Args:
        count: Number of Snowflake containers (at least one is probed)
        timeout: Per-request timeout in seconds

    Returns:
        Summed metrics, or None if no proxy answered
    """
    total = SnowflakeMetrics()
    found = False

    for index in range(1, max(count, 1) + 1):
        url = snowflake_metrics_url(index)
        try:
            metrics = parse_snowflake_metrics(fetch_metrics_text(url, timeout))
        except MetricsUnavailableError as e:
            logger.debug(f"snowflake-{index} metrics unavailable: {e}")
            continue

        total = SnowflakeMetrics(
            total_connections=total.total_connections + metrics.total_connections,
            timeouts_total=total.timeouts_total + metrics.timeouts_total,
            inbound_bytes=total.inbound_bytes + metrics.inbound_bytes,
            outbound_bytes=total.outbound_bytes + metrics.outbound_bytes,
        )
        found = True

    return total if found else None
