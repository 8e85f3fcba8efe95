"""Collection cycle: discovery, bounded fan-out, merge and publish.

One cycle discovers the Conduit containers, collects each of them on its own
worker thread (at most `max_workers` in flight), merges the per-container
results with host, manager and Snowflake data, updates the session tracker
and returns an immutable `StatusResponse`. `Poller` runs cycles on a fixed
interval and publishes them to a `StatusCache` read by the HTTP layer.
"""

from __future__ import annotations

import logging
import math
import socket
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from conduit_expose.core.config import AgentConfig
from conduit_expose.core.schemas import (
    AppMetrics,
    ConnectionStats,
    ContainerInfo,
    ContainerSettings,
    CountryStats,
    StatusResponse,
)
from conduit_expose.monitoring.connections import (
    collect_container_connections,
    merge_connection_stats,
    merge_country_stats,
)
from conduit_expose.monitoring.docker_collector import (
    RUNTIME_ERRORS,
    DockerRuntime,
    Target,
    calculate_cpu_percent,
    collect_container_health,
    container_ip,
    container_pid,
    extract_auto_start,
    format_uptime,
    memory_usage_mb,
)
from conduit_expose.monitoring.geoip import GeoIPResolver
from conduit_expose.monitoring.log_stats import app_metrics_from_logs
from conduit_expose.monitoring.manager_files import ManagerData, ManagerSettings, read_manager_data
from conduit_expose.monitoring.prometheus import (
    MetricsUnavailableError,
    fetch_metrics_text,
    parse_conduit_metrics,
)
from conduit_expose.monitoring.session import SessionTracker
from conduit_expose.monitoring.snowflake import collect_snowflake_metrics
from conduit_expose.monitoring.system_collector import HostSystemCollector

logger = logging.getLogger(__name__)


@dataclass
class TargetResult:
    """Everything one worker collected for one container."""

    info: ContainerInfo
    connections: ConnectionStats | None = None
    countries: list[CountryStats] = field(default_factory=list)


# =============================================================================
# Merge
# =============================================================================


def scale_country_counts(
    snapshot: list[CountryStats], connected_clients: int
) -> list[CountryStats]:
    """Rescale the manager's per-country IP counts to the connected-client total.

    The snapshot counts every peer IP (scanners included), so the counts are
    used as shares of `connected_clients`. Each share is floored and the
    leftover clients go to the largest fractional parts, so the result sums
    exactly to `connected_clients`. Where plain rounding already sums
    exactly, both give the same counts.

    Example:
        {A: 3, B: 1} with 8 connected clients -> {A: 6, B: 2}
    """
    total = sum(c.connections for c in snapshot)
    if total <= 0 or connected_clients <= 0:
        return [CountryStats(country=c.country, connections=c.connections) for c in snapshot]

    exact = [c.connections * connected_clients / total for c in snapshot]
    counts = [math.floor(value) for value in exact]
    leftover = connected_clients - sum(counts)

    # Largest fraction first; ties keep snapshot order
    by_fraction = sorted(range(len(exact)), key=lambda i: exact[i] - counts[i], reverse=True)
    for i in by_fraction[:leftover]:
        counts[i] += 1

    scaled = [
        CountryStats(country=c.country, connections=count)
        for c, count in zip(snapshot, counts, strict=True)
    ]
    scaled.sort(key=lambda c: c.connections, reverse=True)
    return scaled


def select_country_stats(
    manager: ManagerData,
    connected_clients: int,
    observed: Iterable[list[CountryStats]],
) -> list[CountryStats] | None:
    """Pick the country breakdown for the snapshot.

    The manager's snapshot wins when it has entries: scaled to the connected
    client total when there are connected clients, raw otherwise. Without it,
    the per-container GeoIP lists are merged. The two sources are never mixed.
    """
    if manager.clients_by_country:
        if connected_clients > 0:
            countries = scale_country_counts(manager.clients_by_country, connected_clients)
        else:
            countries = list(manager.clients_by_country)
    else:
        countries = merge_country_stats(observed)
    return countries or None


def merge_settings(
    per_container: Iterable[ContainerSettings | None],
    manager: ManagerSettings | None = None,
) -> ContainerSettings | None:
    """Aggregate settings: max for numbers, OR for booleans.

    Positive manager values for max clients and bandwidth take precedence.

    Returns:
        Merged settings, or None when every field is zero/false
    """
    merged = ContainerSettings()
    for settings in per_container:
        if settings is None:
            continue
        merged.max_clients = max(merged.max_clients, settings.max_clients)
        merged.bandwidth_limit_mbps = max(
            merged.bandwidth_limit_mbps, settings.bandwidth_limit_mbps
        )
        merged.auto_start = merged.auto_start or settings.auto_start

    if manager is not None:
        if manager.max_clients > 0:
            merged.max_clients = manager.max_clients
        if manager.bandwidth > 0:
            merged.bandwidth_limit_mbps = manager.bandwidth

    return None if merged.is_empty() else merged


# =============================================================================
# Orchestrator
# =============================================================================


class CollectionOrchestrator:
    """Runs collection cycles against the runtime and the host.

    Owns the state carried between cycles: the host collector's rate state
    and the session tracker. Everything else is rebuilt each cycle.

    Example:
        ```python
        orchestrator = CollectionOrchestrator(config, DockerRuntime.from_env(5.0))
        status = orchestrator.collect()
        print(status.connected_clients)
        ```
    """

    def __init__(
        self,
        config: AgentConfig,
        runtime: DockerRuntime,
        system: HostSystemCollector | None = None,
        geo: GeoIPResolver | None = None,
        session: SessionTracker | None = None,
        hostname: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Agent configuration
            runtime: Container runtime adapter
            system: Host metrics collector (built from config when omitted)
            geo: Optional GeoIP resolver for connection countries
            session: Session tracker (a fresh one when omitted)
            hostname: Agent hostname, used as server id and for self-exclusion
            clock: Wall-clock source, seconds since the epoch
        """
        self.config = config
        self.runtime = runtime
        self.system = system or HostSystemCollector(config.host_proc_path, config.host_root_path)
        self.geo = geo
        self.session = session or SessionTracker(clock=clock)
        self.hostname = socket.gethostname() if hostname is None else hostname
        self._clock = clock
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop in-flight workers before their next step.

        A runtime or metrics call already in flight still runs until its own
        timeout. The orchestrator stays cancelled until `resume()`.
        """
        self._cancel.set()

    def resume(self) -> None:
        """Allow workers to run again after `cancel()`."""
        self._cancel.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def discover(self) -> list[Target]:
        """List target containers.

        Raises:
            DockerException, OSError: If the runtime cannot be listed
        """
        return self.runtime.discover(
            image=self.config.container_image,
            name_prefix=self.config.container_name_prefix,
            self_hostname=self.hostname,
            self_name=self.config.self_name,
        )

    # -------------------------------------------------------------------------
    # Per-target collection
    # -------------------------------------------------------------------------

    def collect_target(self, target: Target) -> TargetResult:
        """Collect one container; a failing step only leaves its fields empty."""
        info = ContainerInfo(id=target.short_id, name=target.name, status=target.state)
        result = TargetResult(info=info)

        if not target.is_running:
            info.status = "down"
            return result

        info.uptime = format_uptime(self._clock() - target.created)

        if self.cancelled:
            return result
        try:
            stats = self.runtime.stats(target.id)
        except RUNTIME_ERRORS as e:
            logger.warning(f"Failed to get stats for {target.name}: {e}")
            info.status = "unhealthy"
        else:
            info.cpu_percent = calculate_cpu_percent(stats)
            info.memory_mb = memory_usage_mb(stats)

        if self.cancelled:
            return result
        auto_start: bool | None = None
        try:
            inspect = self.runtime.inspect(target.id)
        except RUNTIME_ERRORS as e:
            logger.warning(f"Failed to inspect {target.name}: {e}")
        else:
            target.pid = container_pid(inspect)
            target.ip = container_ip(inspect)
            auto_start = extract_auto_start(inspect)
            info.health = collect_container_health(inspect, self.config.host_proc_path)

        if self.cancelled:
            return result
        metrics_settings = self._collect_app_metrics(target, info)
        if metrics_settings is not None or auto_start is not None:
            settings = metrics_settings or ContainerSettings()
            settings.auto_start = bool(auto_start)
            info.settings = settings

        if self.cancelled or target.pid <= 0:
            return result
        conn_stats, countries = collect_container_connections(
            self.config.host_proc_path, target.pid, self.geo
        )
        result.connections = None if conn_stats.is_empty() else conn_stats
        result.countries = countries
        return result

    def _collect_app_metrics(self, target: Target, info: ContainerInfo) -> ContainerSettings | None:
        """Fill `info.app_metrics` from the metrics endpoint, else from the logs.

        Returns:
            Settings gauges from the metrics endpoint, if it answered
        """
        if target.ip:
            url = f"http://{target.ip}:{self.config.metrics_port}{self.config.metrics_path}"
            try:
                text = fetch_metrics_text(url, self.config.metrics_timeout_seconds)
            except MetricsUnavailableError as e:
                logger.warning(f"Metrics unavailable for {target.name}: {e}")
            else:
                info.app_metrics, settings = parse_conduit_metrics(text)
                return settings
        else:
            logger.warning(f"No IP address found for {target.name}")

        if self.cancelled:
            return None
        try:
            info.app_metrics = app_metrics_from_logs(self.runtime.logs(target.id))
        except (*RUNTIME_ERRORS, ValueError) as e:
            logger.debug(f"Log stats fallback failed for {target.name}: {e}")
        return None

    def collect_targets(self, targets: list[Target]) -> list[TargetResult]:
        """Collect all targets on worker threads, at most `max_workers` at a time.

        Each worker writes only its own slot; results keep discovery order.
        """
        results: list[TargetResult | None] = [None] * len(targets)
        gate = threading.BoundedSemaphore(self.config.max_workers)

        def worker(index: int) -> None:
            target = targets[index]
            with gate:
                try:
                    results[index] = self.collect_target(target)
                except Exception:
                    logger.exception(f"Unexpected error collecting {target.name}")
                    results[index] = TargetResult(
                        info=ContainerInfo(id=target.short_id, name=target.name, status="unhealthy")
                    )

        threads = [
            threading.Thread(target=worker, args=(i,), name=f"collect-{t.short_id}", daemon=True)
            for i, t in enumerate(targets)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        return [r for r in results if r is not None]

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def collect(self, sequence: int | None = None) -> StatusResponse:
        """Run one full collection cycle and build the snapshot.

        Args:
            sequence: Cycle number; a cycle that finishes after a newer one
                does not update the session tracker
        """
        discovered = True
        try:
            targets = self.discover()
        except RUNTIME_ERRORS as e:
            logger.warning(f"Container discovery failed: {e}")
            targets = []
            discovered = False

        results = self.collect_targets(targets)
        containers = [r.info for r in results]
        app_metrics: list[AppMetrics] = [c.app_metrics for c in containers if c.app_metrics]

        connected = sum(m.connected_clients for m in app_metrics)
        connecting = sum(m.connecting_clients for m in app_metrics)

        system = self.system.collect()
        manager = read_manager_data(self.config.manager_data_path)

        snowflake = None
        if manager.settings is not None and manager.settings.snowflake_enabled:
            snowflake = collect_snowflake_metrics(
                manager.settings.snowflake_count, self.config.metrics_timeout_seconds
            )

        # A failed discovery would look like a counter reset to the tracker
        if discovered:
            uptime = max((m.uptime_seconds for m in app_metrics), default=0.0)
            recorded = self.session.update(
                connected=connected,
                total_upload=sum(m.bytes_uploaded for m in app_metrics),
                total_download=sum(m.bytes_downloaded for m in app_metrics),
                uptime_seconds=uptime if uptime > 0 else None,
                sequence=sequence,
            )
            if not recorded:
                logger.debug(f"Cycle {sequence} superseded, session not updated")
        if manager.available:
            self.session.apply_override(
                peak_connections=manager.peak_connections, start_time=manager.tracker_start
            )

        status = StatusResponse(
            server_id=self.hostname,
            timestamp=int(self._clock()),
            total_containers=len(containers),
            connected_clients=connected,
            connecting_clients=connecting,
            system=system,
            settings=merge_settings((c.settings for c in containers), manager.settings),
            session=self.session.snapshot(),
            connections=merge_connection_stats(r.connections for r in results),
            clients_by_country=select_country_stats(
                manager, connected, (r.countries for r in results)
            ),
            traffic_by_country=manager.traffic_by_country or None,
            snowflake=snowflake,
            manager_available=manager.available,
            containers=containers,
        )
        logger.debug(
            f"Cycle complete: {status.total_containers} containers, "
            f"{status.connected_clients} connected clients"
        )
        return status


# =============================================================================
# Publishing
# =============================================================================


class StatusCache:
    """Latest published snapshot, swapped under a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status: StatusResponse | None = None
        self._sequence = -1

    def set(self, status: StatusResponse, sequence: int | None = None) -> bool:
        """Publish `status`.

        Args:
            status: Snapshot to publish
            sequence: Cycle number; a snapshot from a cycle older than the
                published one is dropped

        Returns:
            True if the snapshot was published
        """
        with self._lock:
            if sequence is not None:
                if sequence < self._sequence:
                    return False
                self._sequence = sequence
            self._status = status
            return True

    def get(self) -> StatusResponse | None:
        with self._lock:
            return self._status


class Poller:
    """Runs a collection cycle every `interval` seconds.

    The first cycle starts immediately. Each tick starts its cycle on a new
    thread, so an overrunning cycle never delays the next tick; the cache
    drops the older of two cycles that finish out of order.

    Example:
        ```python
        poller = Poller(orchestrator, cache, interval=15.0)
        poller.start()
        # ... serve cache.get() ...
        poller.stop()
        ```
    """

    def __init__(
        self,
        orchestrator: CollectionOrchestrator,
        cache: StatusCache,
        interval: float,
    ) -> None:
        self._orchestrator = orchestrator
        self._cache = cache
        self._interval = interval
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._sequence = 0
        self._cycles: list[threading.Thread] = []
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the background ticker thread."""
        if self._thread is not None:
            logger.warning("Poller already running")
            return
        self._stop.clear()
        self._orchestrator.resume()
        self._thread = threading.Thread(target=self._tick_loop, name="poller", daemon=True)
        self._thread.start()
        logger.info(f"Polling every {self._interval:g}s")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop ticking, cancel in-flight cycles and wait for them briefly."""
        self._stop.set()
        self._orchestrator.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._lock:
            cycles, self._cycles = self._cycles, []
        for cycle in cycles:
            cycle.join(timeout=timeout)

    def run_cycle(self, sequence: int | None = None) -> StatusResponse | None:
        """Run one cycle synchronously and publish it."""
        if sequence is None:
            sequence = self._next_sequence()
        try:
            status = self._orchestrator.collect(sequence)
        except Exception:
            logger.exception("Collection cycle failed")
            return None

        if sequence == 1:
            logger.info(f"Initial data collection complete ({status.total_containers} containers)")
        if not self._cache.set(status, sequence):
            logger.debug(f"Dropped result of superseded cycle {sequence}")
        return status

    def _next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def _tick_loop(self) -> None:
        next_tick = time.monotonic()
        while not self._stop.is_set():
            cycle = threading.Thread(
                target=self.run_cycle,
                args=(self._next_sequence(),),
                name="collect-cycle",
                daemon=True,
            )
            with self._lock:
                self._cycles = [c for c in self._cycles if c.is_alive()]
                self._cycles.append(cycle)
            cycle.start()

            next_tick += self._interval
            self._stop.wait(max(0.0, next_tick - time.monotonic()))
