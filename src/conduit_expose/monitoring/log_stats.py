"""Application metrics recovered from container logs.

Used when a container's metrics endpoint is unreachable: Conduit prints a
periodic status line such as

    2024/05/01 12:00:00 [STATS] Connecting: 2 | Connected: 14 | Up: 1.5 GB | Down: 12.3 GB | Uptime: 3h2m5s

Non-TTY runtime log payloads are multiplexed into frames with an 8-byte
header: stream type (1 byte), 3 reserved zero bytes, payload length (4 bytes,
big-endian).
"""

from __future__ import annotations

import re
from collections.abc import Iterator

from conduit_expose.core.config import parse_duration
from conduit_expose.core.schemas import AppMetrics

STATS_MARKER = "[STATS]"
FRAME_HEADER_SIZE = 8
_STREAM_TYPES = (0, 1, 2)  # stdin, stdout, stderr

_SIZE_UNITS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024**2,
    "GB": 1024**3,
    "TB": 1024**4,
}
_SIZE_PATTERN = re.compile(r"^\s*([\d.]+)\s*([KMGT]?i?B)?\s*$", re.IGNORECASE)


def is_framed(payload: bytes) -> bool:
    """True if `payload` starts with a multiplexed frame header."""
    return (
        len(payload) >= FRAME_HEADER_SIZE
        and payload[0] in _STREAM_TYPES
        and payload[1:4] == b"\x00\x00\x00"
    )


def iter_log_frames(payload: bytes) -> Iterator[tuple[int, bytes]]:
    """Yield (stream type, frame payload) pairs; a truncated frame ends iteration."""
    offset = 0
    while offset + FRAME_HEADER_SIZE <= len(payload):
        header = payload[offset : offset + FRAME_HEADER_SIZE]
        stream_type = header[0]
        size = int.from_bytes(header[4:8], "big")
        offset += FRAME_HEADER_SIZE
        if size == 0:
            continue
        frame = payload[offset : offset + size]
        if len(frame) < size:
            return
        offset += size
        yield stream_type, frame


def demux_logs(payload: bytes) -> str:
    """Decode a log payload to text, stripping frame headers when present.

    TTY containers and already-demultiplexed payloads pass through unchanged.
    """
    if not is_framed(payload):
        return payload.decode("utf-8", errors="replace")
    return b"".join(frame for _, frame in iter_log_frames(payload)).decode(
        "utf-8", errors="replace"
    )


def last_stats_line(text: str) -> str | None:
    last = None
    for line in text.splitlines():
        if STATS_MARKER in line:
            last = line
    return last


def parse_size(value: str) -> float:
    """Parse `1.5 GB`-style sizes (1024-based) into bytes.

    Raises:
        ValueError: If the value is not a size
    """
    match = _SIZE_PATTERN.match(value)
    if match is None:
        raise ValueError(f"invalid size: {value!r}")
    unit = (match.group(2) or "B").upper().replace("IB", "B")
    return float(match.group(1)) * _SIZE_UNITS[unit]


def _count(value: str) -> int:
    count = int(value)
    if count < 0:
        raise ValueError(f"negative count: {value!r}")
    return count


def parse_stats_line(line: str) -> AppMetrics | None:
    """Parse the `Key: Value` pairs after the [STATS] marker.

    Returns:
        AppMetrics, or None if no recognized key was present
    """
    _, _, body = line.partition(STATS_MARKER)
    fields: dict[str, float | int] = {}

    for part in body.split("|"):
        key, sep, value = part.partition(":")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        try:
            if key == "connecting":
                fields["connecting_clients"] = _count(value)
            elif key == "connected":
                fields["connected_clients"] = _count(value)
            elif key == "up":
                fields["bytes_uploaded"] = parse_size(value)
            elif key == "down":
                fields["bytes_downloaded"] = parse_size(value)
            elif key == "uptime":
                fields["uptime_seconds"] = parse_duration(value)
        except ValueError:
            continue

    if not fields:
        return None
    return AppMetrics(**fields)


def app_metrics_from_logs(payload: bytes) -> AppMetrics | None:
    """Find and parse the most recent [STATS] line of a log payload."""
    line = last_stats_line(demux_logs(payload))
    return parse_stats_line(line) if line is not None else None
