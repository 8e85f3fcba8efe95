"""Session tracking across poll cycles.

Keeps peak and average connected clients plus the latest cumulative traffic
since the last detected restart of the monitored fleet. A drop in either
cumulative traffic counter means the underlying process restarted.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from conduit_expose.core.schemas import SessionInfo


class SessionTracker:
    """Rolling session state with a self-measured and an authoritative update path.

    Example:
        ```python
        tracker = SessionTracker()
        tracker.update(connected=12, total_upload=1e6, total_download=4e6)
        tracker.apply_override(peak_connections=40, start_time=1700000000)
        info = tracker.snapshot()
        ```
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._start_time = clock()
        self._peak = 0
        self._sample_count = 0
        self._connection_sum = 0
        self._last_upload = 0.0
        self._last_download = 0.0
        self._sequence = -1

    def update(
        self,
        connected: int,
        total_upload: float,
        total_download: float,
        uptime_seconds: float | None = None,
        sequence: int | None = None,
    ) -> bool:
        """Record one cycle's self-measured values.

        Cycles can finish out of order. A cycle older than the last one
        recorded read older counters, which would look like a restart, so it
        is ignored.

        Args:
            connected: Connected clients across the fleet
            total_upload: Cumulative uploaded bytes across the fleet
            total_download: Cumulative downloaded bytes across the fleet
            uptime_seconds: Authoritative process uptime; when given, the start
                time becomes `now - uptime_seconds`
            sequence: Cycle number, if the caller numbers its cycles

        Returns:
            True if the values were recorded
        """
        with self._lock:
            if sequence is not None:
                if sequence < self._sequence:
                    return False
                self._sequence = sequence

            now = self._clock()
            if total_upload < self._last_upload or total_download < self._last_download:
                self._start_time = now
                self._peak = 0
                self._sample_count = 0
                self._connection_sum = 0

            self._peak = max(self._peak, connected)
            self._sample_count += 1
            self._connection_sum += connected
            # The regressed values become the new baseline
            self._last_upload = total_upload
            self._last_download = total_download

            if uptime_seconds is not None and uptime_seconds > 0:
                self._start_time = max(0.0, now - uptime_seconds)
            return True

    def apply_override(self, peak_connections: int = 0, start_time: float = 0) -> None:
        """Apply authoritative values from the manager; never lowers the peak."""
        with self._lock:
            if peak_connections > self._peak:
                self._peak = peak_connections
            if start_time > 0:
                self._start_time = start_time

    def snapshot(self) -> SessionInfo:
        with self._lock:
            avg = self._connection_sum / self._sample_count if self._sample_count else 0.0
            return SessionInfo(
                start_time=int(self._start_time),
                peak_connections=self._peak,
                avg_connections=avg,
                total_upload_bytes=self._last_upload,
                total_download_bytes=self._last_download,
            )
