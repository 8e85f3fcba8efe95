"""Reader for the Conduit Manager's flat state files.

The manager process rewrites these files in place, so a reader can observe a
partially written file. A last line without a trailing newline is treated as
a partial write and discarded.

Files (relative to the manager data directory):
- traffic_stats/tracker_snapshot: `DIRECTION|COUNTRY|BYTES|IP` per line, the
  current capture window
- traffic_stats/cumulative_data: `COUNTRY|FROM_BYTES|TO_BYTES` per line
- traffic_stats/peak_connections: start timestamp line, then peak integer line
- settings.conf: bash-style `KEY=VALUE` lines
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from conduit_expose.core.schemas import CountryStats, CountryTrafficStats

logger = logging.getLogger(__name__)


@dataclass
class ManagerSettings:
    """Recognized keys of settings.conf."""

    max_clients: int = 0
    bandwidth: float = 0.0  # Mbps
    container_count: int = 0
    snowflake_enabled: bool = False
    snowflake_count: int = 0


@dataclass
class ManagerData:
    """Everything read from the manager directory in one cycle."""

    available: bool = False
    clients_by_country: list[CountryStats] = field(default_factory=list)
    traffic_by_country: list[CountryTrafficStats] = field(default_factory=list)
    tracker_start: int = 0  # Unix timestamp, 0 when unknown
    peak_connections: int = 0
    settings: ManagerSettings | None = None


def safe_read_lines(path: Path) -> list[str]:
    """Read complete lines of a file that may be mid-write.

    Returns:
        Lines without their newlines; empty if the file is missing or unreadable
    """
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except (FileNotFoundError, PermissionError, IsADirectoryError):
        return []
    except OSError as e:
        logger.debug(f"Error reading {path}: {e}")
        return []

    if not content:
        return []
    lines = content.split("\n")
    # Either the empty string after the final newline, or a partial last line
    return lines[:-1]


def read_tracker_snapshot(path: Path) -> list[CountryStats]:
    """Count unique IPs per country in the current capture window."""
    country_ips: dict[str, set[str]] = {}
    for line in safe_read_lines(path):
        parts = line.strip().split("|")
        if len(parts) < 4:
            continue
        country = parts[1].strip()
        ip = parts[3].strip()
        if not country or not ip:
            continue
        country_ips.setdefault(country, set()).add(ip)

    result = [CountryStats(country=c, connections=len(ips)) for c, ips in country_ips.items()]
    result.sort(key=lambda c: c.connections, reverse=True)
    return result


def read_cumulative_data(path: Path) -> list[CountryTrafficStats]:
    """Sum cumulative traffic per country, sorted by total bytes descending."""
    totals: dict[str, list[float]] = {}
    for line in safe_read_lines(path):
        parts = line.strip().split("|", 2)
        if len(parts) != 3:
            continue
        country = parts[0].strip()
        if not country:
            continue
        try:
            from_bytes = float(parts[1].strip())
            to_bytes = float(parts[2].strip())
        except ValueError:
            continue
        entry = totals.setdefault(country, [0.0, 0.0])
        entry[0] += from_bytes
        entry[1] += to_bytes

    result = [
        CountryTrafficStats(country=c, from_bytes=f, to_bytes=t) for c, (f, t) in totals.items()
    ]
    result.sort(key=lambda c: c.from_bytes + c.to_bytes, reverse=True)
    return result


def parse_timestamp(value: str) -> int:
    """Parse an RFC 3339 or Unix timestamp into Unix seconds, 0 if invalid."""
    value = value.strip()
    try:
        return int(datetime.fromisoformat(value).timestamp())
    except ValueError:
        pass
    try:
        return int(value)
    except ValueError:
        return 0


def read_peak_connections(path: Path) -> tuple[int, int]:
    """Read (tracker start timestamp, peak connections); zeros when unavailable."""
    lines = safe_read_lines(path)
    if len(lines) < 2:
        return 0, 0

    start = parse_timestamp(lines[0])
    try:
        peak = int(lines[1].strip())
    except ValueError:
        return start, 0
    return start, max(peak, 0)


def read_manager_settings(path: Path) -> ManagerSettings | None:
    """Parse settings.conf.

    Returns:
        ManagerSettings, or None if no recognized key was found
    """
    lines = safe_read_lines(path)
    if not lines:
        return None

    settings = ManagerSettings()
    found = False
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip().strip("\"'")

        try:
            if key == "MAX_CLIENTS":
                settings.max_clients = int(value)
            elif key == "BANDWIDTH":
                settings.bandwidth = float(value)
            elif key == "CONTAINER_COUNT":
                settings.container_count = int(value)
            elif key == "SNOWFLAKE_ENABLED":
                settings.snowflake_enabled = value.lower() == "true"
            elif key == "SNOWFLAKE_COUNT":
                settings.snowflake_count = int(value)
            else:
                continue
        except ValueError:
            continue
        found = True

    if not found:
        logger.warning(f"{path} has no recognized settings")
        return None
    return settings


def read_manager_data(data_path: Path) -> ManagerData:
    """Read all manager files.

    A missing directory yields `ManagerData(available=False)`; individual
    missing files leave their fields empty.
    """
    data_path = Path(data_path)
    if not data_path.is_dir():
        return ManagerData()

    stats_path = data_path / "traffic_stats"
    tracker_start, peak = read_peak_connections(stats_path / "peak_connections")
    return ManagerData(
        available=True,
        clients_by_country=read_tracker_snapshot(stats_path / "tracker_snapshot"),
        traffic_by_country=read_cumulative_data(stats_path / "cumulative_data"),
        tracker_start=tracker_start,
        peak_connections=peak,
        settings=read_manager_settings(data_path / "settings.conf"),
    )
