"""Rate/delta computation for host counters.

Converts monotonically increasing host counters (CPU ticks, network byte,
error and drop counters) into point-in-time values by keeping the previous
sample across poll cycles.

Each counter family has its own state object holding the previous sample and
a lock. The orchestrator owns the state objects; nothing here is module-level.

Functions:
    compute_cpu_percent: Busy percentage between two tick samples
    compute_mbps: Throughput in megabits per second
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from conduit_expose.utils.numbers import round2


@dataclass(frozen=True)
class CPUTicks:
    """Host-wide CPU tick counters from the `cpu ` line of /proc/stat."""

    idle: int
    total: int


@dataclass(frozen=True)
class NetCounters:
    """Cumulative network counters summed over all non-loopback interfaces."""

    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0


@dataclass(frozen=True)
class NetRates:
    """Network throughput and counter deltas for one cycle."""

    in_mbps: float = 0.0
    out_mbps: float = 0.0
    errors: int = 0
    drops: int = 0


def compute_cpu_percent(previous: CPUTicks | None, current: CPUTicks) -> float:
    """Compute percent-busy as `1 - Δidle/Δtotal`, in percent.

    Args:
        previous: Previous sample, or None on the first cycle
        current: Current sample

    Returns:
        Busy percentage rounded to two decimals; 0.0 without a usable delta
    """
    if previous is None:
        return 0.0
    total_delta = current.total - previous.total
    if total_delta <= 0:
        return 0.0
    idle_delta = current.idle - previous.idle
    return round2(max(0.0, 1 - idle_delta / total_delta) * 100)


def compute_mbps(bytes_delta: int | float, elapsed_seconds: float) -> float:
    """Compute throughput as `Δbytes × 8 / (elapsed × 1e6)`.

    Returns:
        Megabits per second rounded to two decimals, 0.0 if elapsed is not positive
    """
    if elapsed_seconds <= 0:
        return 0.0
    return round2(bytes_delta * 8 / (elapsed_seconds * 1e6))


def _delta(current: int, previous: int) -> int:
    return max(0, current - previous)


class CPURateState:
    """Previous CPU tick sample, shared across cycles."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._previous: CPUTicks | None = None

    def update(self, current: CPUTicks) -> float:
        """Record `current` and return busy percent relative to the previous sample."""
        with self._lock:
            percent = compute_cpu_percent(self._previous, current)
            self._previous = current
            return percent


class NetworkRateState:
    """Previous network counter sample and the wall-clock time it was taken."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._previous: NetCounters | None = None
        self._previous_time: float | None = None

    def update(self, current: NetCounters, now: float | None = None) -> NetRates:
        """Record `current` and return rates relative to the previous sample.

        Args:
            current: Counters read this cycle
            now: Sample time in seconds (defaults to time.time())

        Returns:
            NetRates; all zero on the first sample or when no time has elapsed
        """
        if now is None:
            now = time.time()
        with self._lock:
            rates = NetRates()
            prev = self._previous
            if prev is not None and self._previous_time is not None:
                elapsed = now - self._previous_time
                if elapsed > 0:
                    # A counter that went backwards (interface reset) contributes 0
                    rates = NetRates(
                        in_mbps=compute_mbps(_delta(current.rx_bytes, prev.rx_bytes), elapsed),
                        out_mbps=compute_mbps(_delta(current.tx_bytes, prev.tx_bytes), elapsed),
                        errors=_delta(current.rx_errors, prev.rx_errors)
                        + _delta(current.tx_errors, prev.tx_errors),
                        drops=_delta(current.rx_dropped, prev.rx_dropped)
                        + _delta(current.tx_dropped, prev.tx_dropped),
                    )
            self._previous = current
            self._previous_time = now
            return rates
