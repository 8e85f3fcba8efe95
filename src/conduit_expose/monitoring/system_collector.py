"""Host system collector reading /proc and the root filesystem.

Reads the host's view of the kernel through a bind-mounted proc tree
(`host_proc_path`, typically /host/proc), so values describe the host even when
the agent runs in a container.

Files sourced:
- stat: host-wide CPU ticks (delta-based busy percent)
- meminfo: MemTotal / MemAvailable
- loadavg: 1/5/15 minute load averages
- 1/net/dev: network counters in PID 1's (the host's) network namespace
- host_root_path: filesystem usage
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path

from conduit_expose.core.schemas import SystemMetrics
from conduit_expose.monitoring.rates import (
    CPURateState,
    CPUTicks,
    NetCounters,
    NetworkRateState,
)
from conduit_expose.utils.numbers import round2

logger = logging.getLogger(__name__)


def parse_cpu_ticks(content: str) -> CPUTicks | None:
    """Parse the aggregate `cpu ` line of /proc/stat.

    Format:
        cpu  user nice system idle iowait irq softirq steal guest guest_nice

    Total is the sum of the first ten counters; idle is the fourth.
    """
    first_line = content.split("\n", 1)[0]
    if not first_line.startswith("cpu "):
        return None
    fields = first_line.split()
    if len(fields) < 5:
        return None

    values = [0] * 10
    for i, field in enumerate(fields[1:11]):
        try:
            values[i] = int(field)
        except ValueError:
            continue
    return CPUTicks(idle=values[3], total=sum(values))


def parse_meminfo(content: str) -> tuple[int, int]:
    """Return (MemTotal, MemAvailable) in kB from /proc/meminfo."""
    mem_total = 0
    mem_available = 0
    for line in content.splitlines():
        if line.startswith("MemTotal:"):
            mem_total = _meminfo_value(line)
        elif line.startswith("MemAvailable:"):
            mem_available = _meminfo_value(line)
        if mem_total and mem_available:
            break
    return mem_total, mem_available


def _meminfo_value(line: str) -> int:
    fields = line.split()
    if len(fields) < 2:
        return 0
    try:
        return int(fields[1])
    except ValueError:
        return 0


def parse_net_dev(content: str) -> NetCounters:
    """Sum counters of all non-loopback interfaces in /proc/net/dev.

    Format (after the two header lines):
        eth0: rx_bytes rx_packets rx_errs rx_drop ... tx_bytes tx_packets tx_errs tx_drop ...
    """
    totals = dict.fromkeys(
        ("rx_bytes", "tx_bytes", "rx_errors", "tx_errors", "rx_dropped", "tx_dropped"), 0
    )
    for line in content.splitlines():
        iface, sep, rest = line.partition(":")
        if not sep:
            continue
        if iface.strip() == "lo":
            continue
        fields = rest.split()
        if len(fields) < 12:
            continue
        try:
            totals["rx_bytes"] += int(fields[0])
            totals["rx_errors"] += int(fields[2])
            totals["rx_dropped"] += int(fields[3])
            totals["tx_bytes"] += int(fields[8])
            totals["tx_errors"] += int(fields[10])
            totals["tx_dropped"] += int(fields[11])
        except ValueError:
            continue
    return NetCounters(**totals)


class HostSystemCollector:
    """Collects host metrics, keeping CPU and network rate state across cycles."""

    def __init__(
        self,
        host_proc_path: Path,
        host_root_path: Path,
        cpu_state: CPURateState | None = None,
        net_state: NetworkRateState | None = None,
    ) -> None:
        self._proc = Path(host_proc_path)
        self._root = Path(host_root_path)
        self.cpu_state = cpu_state or CPURateState()
        self.net_state = net_state or NetworkRateState()
        # Serializes read-then-update so a later read never lands before an earlier one
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self._proc.exists()

    def collect(self) -> SystemMetrics | None:
        """Read all host sources once.

        Returns:
            SystemMetrics, or None if the host proc tree is not mounted
        """
        if not self.is_available():
            logger.debug(f"Host proc path {self._proc} not found, skipping system metrics")
            return None

        metrics: dict[str, float | int] = {}
        with self._lock:
            metrics.update(self._read_cpu())
            metrics.update(self._read_network())
        metrics.update(self._read_memory())
        metrics.update(self._read_loadavg())
        metrics.update(self._read_disk())
        return SystemMetrics(**metrics)

    def _read_text(self, relative: str) -> str | None:
        try:
            return (self._proc / relative).read_text()
        except (FileNotFoundError, PermissionError):
            return None
        except OSError as e:
            logger.debug(f"Error reading {self._proc / relative}: {e}")
            return None

    def _read_cpu(self) -> dict[str, float]:
        content = self._read_text("stat")
        ticks = parse_cpu_ticks(content) if content else None
        if ticks is None:
            return {}
        return {"cpu_percent": self.cpu_state.update(ticks)}

    def _read_network(self) -> dict[str, float | int]:
        content = self._read_text("1/net/dev")
        if content is None:
            return {}
        rates = self.net_state.update(parse_net_dev(content))
        return {
            "net_in_mbps": rates.in_mbps,
            "net_out_mbps": rates.out_mbps,
            "net_errors": rates.errors,
            "net_drops": rates.drops,
        }

    def _read_memory(self) -> dict[str, float]:
        content = self._read_text("meminfo")
        if content is None:
            return {}
        mem_total, mem_available = parse_meminfo(content)
        if mem_total <= 0:
            return {}
        return {
            "memory_total_mb": round2(mem_total / 1024),
            "memory_used_mb": round2(max(0, mem_total - mem_available) / 1024),
        }

    def _read_loadavg(self) -> dict[str, float]:
        content = self._read_text("loadavg")
        if content is None:
            return {}
        fields = content.split()
        if len(fields) < 3:
            return {}
        try:
            return {
                "load_avg_1m": float(fields[0]),
                "load_avg_5m": float(fields[1]),
                "load_avg_15m": float(fields[2]),
            }
        except ValueError:
            return {}

    def _read_disk(self) -> dict[str, float]:
        if not self._root.exists():
            return {}
        try:
            usage = shutil.disk_usage(self._root)
        except OSError as e:
            logger.warning(f"Failed to stat filesystem at {self._root}: {e}")
            return {}
        return {
            "disk_total_gb": round2(usage.total / 1e9),
            "disk_used_gb": round2((usage.total - usage.free) / 1e9),
        }
