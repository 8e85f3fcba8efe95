"""Minimal parser for the Prometheus text exposition format.

Only a fixed vocabulary of metric names is recognized; everything else is
ignored. This is not a general Prometheus client.

Line forms:
    metric_name value [timestamp]
    metric_name{label="x",...} value [timestamp]
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from conduit_expose.core.schemas import AppMetrics, ContainerSettings, SnowflakeMetrics

logger = logging.getLogger(__name__)


class MetricsUnavailableError(Exception):
    """A metrics endpoint could not be fetched or decoded."""


class LineKind(str, Enum):
    """Shape of a sample line."""

    BARE = "bare"
    LABELED = "labeled"


@dataclass(frozen=True)
class MetricLine:
    """One parsed sample line."""

    kind: LineKind
    name: str
    value: float
    labels: str = ""  # raw label block including braces, LABELED only


class Aggregation(str, Enum):
    GAUGE = "gauge"  # last value wins
    SUM = "sum"  # summed across all label sets


@dataclass(frozen=True)
class MetricSpec:
    """How a recognized metric name maps onto a result field."""

    target: str  # result bucket, e.g. "app" or "settings"
    field: str
    aggregation: Aggregation = Aggregation.GAUGE
    convert: Callable[[float], float | int | bool] = float


def split_metric_line(line: str) -> tuple[str, str]:
    """Split `name{labels} value` or `name value` into name and remainder."""
    brace = line.find("{")
    if brace != -1:
        return line[:brace], line[brace:]
    space = line.find(" ")
    if space != -1:
        return line[:space], line[space:]
    return line, ""


def parse_metric_line(line: str) -> MetricLine | None:
    """Parse one exposition line.

    Returns:
        MetricLine, or None for comments, blank lines and unparseable values
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    name, rest = split_metric_line(line)
    labels = ""
    kind = LineKind.BARE
    if rest.startswith("{"):
        close = rest.find("}")
        if close == -1:
            return None
        labels, rest = rest[: close + 1], rest[close + 1 :]
        kind = LineKind.LABELED

    # Value is the first token; an optional timestamp may follow
    tokens = rest.split()
    if not tokens:
        return None
    try:
        value = float(tokens[0])
    except ValueError:
        return None
    return MetricLine(kind=kind, name=name, value=value, labels=labels)


def iter_metric_lines(text: str | Iterable[str]) -> Iterator[MetricLine]:
    lines = text.splitlines() if isinstance(text, str) else text
    for raw in lines:
        parsed = parse_metric_line(raw)
        if parsed is not None:
            yield parsed


def _is_live(value: float) -> bool:
    return value >= 1


def _bytes_per_second_to_mbps(value: float) -> float:
    return value * 8 / 1_000_000


CONDUIT_METRICS: dict[str, MetricSpec] = {
    "conduit_connected_clients": MetricSpec("app", "connected_clients", convert=int),
    "conduit_connecting_clients": MetricSpec("app", "connecting_clients", convert=int),
    "conduit_announcing": MetricSpec("app", "announcing", convert=int),
    "conduit_is_live": MetricSpec("app", "is_live", convert=_is_live),
    "conduit_bytes_uploaded": MetricSpec("app", "bytes_uploaded"),
    "conduit_bytes_downloaded": MetricSpec("app", "bytes_downloaded"),
    "conduit_uptime_seconds": MetricSpec("app", "uptime_seconds"),
    "conduit_idle_seconds": MetricSpec("app", "idle_seconds"),
    "conduit_max_clients": MetricSpec("settings", "max_clients", convert=int),
    "conduit_bandwidth_limit_bytes_per_second": MetricSpec(
        "settings", "bandwidth_limit_mbps", convert=_bytes_per_second_to_mbps
    ),
}

SNOWFLAKE_METRICS: dict[str, MetricSpec] = {
    "tor_snowflake_proxy_connections_total": MetricSpec(
        "snowflake", "total_connections", Aggregation.SUM
    ),
    "tor_snowflake_proxy_connection_timeouts_total": MetricSpec(
        "snowflake", "timeouts_total", Aggregation.SUM
    ),
    "tor_snowflake_proxy_traffic_inbound_bytes_total": MetricSpec(
        "snowflake", "inbound_bytes", Aggregation.SUM
    ),
    "tor_snowflake_proxy_traffic_outbound_bytes_total": MetricSpec(
        "snowflake", "outbound_bytes", Aggregation.SUM
    ),
}


@dataclass
class _Buckets:
    values: dict[str, dict[str, float | int | bool]] = field(default_factory=dict)

    def apply(self, spec: MetricSpec, raw: float) -> None:
        bucket = self.values.setdefault(spec.target, {})
        if spec.aggregation is Aggregation.SUM:
            bucket[spec.field] = bucket.get(spec.field, 0.0) + raw
        else:
            bucket[spec.field] = spec.convert(raw)

    def get(self, target: str) -> dict[str, float | int | bool]:
        return self.values.get(target, {})


def _collect(text: str | Iterable[str], vocabulary: dict[str, MetricSpec]) -> _Buckets:
    buckets = _Buckets()
    for line in iter_metric_lines(text):
        spec = vocabulary.get(line.name)
        # Every recognized metric is a non-negative count, size or duration
        if spec is None or not math.isfinite(line.value) or line.value < 0:
            continue
        buckets.apply(spec, line.value)
    return buckets


def parse_conduit_metrics(text: str | Iterable[str]) -> tuple[AppMetrics, ContainerSettings]:
    """Extract Conduit application metrics and settings gauges."""
    buckets = _collect(text, CONDUIT_METRICS)
    return AppMetrics(**buckets.get("app")), ContainerSettings(**buckets.get("settings"))


def parse_snowflake_metrics(text: str | Iterable[str]) -> SnowflakeMetrics:
    """Extract Snowflake proxy counters, summing across label sets."""
    buckets = _collect(text, SNOWFLAKE_METRICS)
    values = buckets.get("snowflake")
    return SnowflakeMetrics(
        total_connections=int(values.get("total_connections", 0)),
        timeouts_total=int(values.get("timeouts_total", 0)),
        inbound_bytes=float(values.get("inbound_bytes", 0.0)),
        outbound_bytes=float(values.get("outbound_bytes", 0.0)),
    )


def fetch_metrics_text(url: str, timeout: float) -> str:
    """GET an exposition endpoint and return the decoded body.

    Raises:
        MetricsUnavailableError: On non-200 status, network error, timeout or decode error
    """
    logger.debug(f"Fetching metrics from {url}")
    req = Request(url, headers={"Accept": "text/plain"})
    try:
        with urlopen(req, timeout=timeout) as response:
            if response.status != 200:
                raise MetricsUnavailableError(f"{url} returned HTTP {response.status}")
            return response.read().decode("utf-8")
    except HTTPError as e:
        raise MetricsUnavailableError(f"{url} returned HTTP {e.code}") from e
    except (URLError, TimeoutError, OSError, UnicodeDecodeError) as e:
        raise MetricsUnavailableError(f"fetching {url}: {e}") from e
