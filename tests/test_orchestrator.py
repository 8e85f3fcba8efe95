"""Tests for the collection orchestrator, merge and publishing."""

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, DockerException

from conduit_expose.core.config import AgentConfig
from conduit_expose.core.schemas import ContainerSettings, CountryStats, StatusResponse
from conduit_expose.monitoring.docker_collector import Target
from conduit_expose.monitoring.manager_files import ManagerData, ManagerSettings
from conduit_expose.monitoring.prometheus import MetricsUnavailableError
from conduit_expose.orchestrator import (
    CollectionOrchestrator,
    Poller,
    StatusCache,
    merge_settings,
    scale_country_counts,
    select_country_stats,
)

NOW = 1_700_000_000.0
METRICS_TEXT = """\
conduit_connected_clients 12
conduit_connecting_clients 2
conduit_bytes_uploaded 1000
conduit_bytes_downloaded 5000
conduit_uptime_seconds 600
conduit_max_clients 100
conduit_bandwidth_limit_bytes_per_second 1250000
"""
TCP_TABLE = """\
  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid  timeout inode
   0: 0300110A:1F90 0F02000A:C350 01 00000000:00000000 00:00000000 00000000     0        0 1 1
   1: 0300110A:1F90 0E02000A:C351 06 00000000:00000000 00:00000000 00000000     0        0 2 1
"""


def stats_response() -> dict:
    return {
        "cpu_stats": {
            "cpu_usage": {"total_usage": 300},
            "system_cpu_usage": 2000,
            "online_cpus": 1,
        },
        "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
        "memory_stats": {"usage": 64 * 1024 * 1024},
    }


def inspect_response(pid: int = 4242, ip: str = "172.17.0.3") -> dict:
    return {
        "RestartCount": 1,
        "State": {"Pid": pid, "OOMKilled": False},
        "HostConfig": {"NetworkMode": "bridge", "RestartPolicy": {"Name": "unless-stopped"}},
        "NetworkSettings": {"Networks": {"bridge": {"IPAddress": ip}}},
    }


def make_target(index: int, state: str = "running") -> Target:
    return Target(
        id=f"{index:02d}" + "a" * 62,
        name=f"conduit{index}",
        state=state,
        created=int(NOW - 3600),
    )


@pytest.fixture
def config(tmp_path: Path) -> AgentConfig:
    proc = tmp_path / "proc"
    proc.mkdir()
    return AgentConfig(
        host_proc_path=proc,
        host_root_path=tmp_path,
        manager_data_path=tmp_path / "no-manager",
        max_workers=2,
    )


@pytest.fixture
def runtime() -> MagicMock:
    runtime = MagicMock()
    runtime.discover.return_value = [make_target(1)]
    runtime.stats.return_value = stats_response()
    runtime.inspect.return_value = inspect_response()
    runtime.logs.return_value = b""
    return runtime


def make_orchestrator(config: AgentConfig, runtime: MagicMock) -> CollectionOrchestrator:
    return CollectionOrchestrator(config, runtime, hostname="agent-host", clock=lambda: NOW)


class TestScaleCountryCounts:
    """Tests for rescaling the manager snapshot to connected clients."""

    def test_known_scaling(self):
        """{A:3,B:1}, snapshot total 4, 8 connected -> {A:6,B:2}."""
        snapshot = [
            CountryStats(country="A", connections=3),
            CountryStats(country="B", connections=1),
        ]
        scaled = scale_country_counts(snapshot, 8)
        assert [(c.country, c.connections) for c in scaled] == [("A", 6), ("B", 2)]

    def test_sums_exactly_when_rounding_would_not(self):
        snapshot = [CountryStats(country=c, connections=1) for c in ("A", "B", "C")]
        scaled = scale_country_counts(snapshot, 2)
        assert sum(c.connections for c in scaled) == 2

    def test_scales_down(self):
        snapshot = [
            CountryStats(country="US", connections=50),
            CountryStats(country="IR", connections=30),
            CountryStats(country="DE", connections=20),
        ]
        scaled = scale_country_counts(snapshot, 7)
        assert sum(c.connections for c in scaled) == 7
        assert [c.country for c in scaled][0] == "US"

    def test_no_connected_clients_keeps_raw(self):
        snapshot = [CountryStats(country="A", connections=3)]
        assert scale_country_counts(snapshot, 0)[0].connections == 3


class TestSelectCountryStats:
    """Tests for choosing the country source."""

    observed = [
        [CountryStats(country="FR", connections=2)],
        [CountryStats(country="FR", connections=1)],
    ]

    def test_manager_snapshot_scaled(self):
        manager = ManagerData(
            available=True,
            clients_by_country=[
                CountryStats(country="A", connections=3),
                CountryStats(country="B", connections=1),
            ],
        )
        result = select_country_stats(manager, 8, self.observed)
        assert result is not None
        assert [(c.country, c.connections) for c in result] == [("A", 6), ("B", 2)]

    def test_manager_snapshot_raw_without_clients(self):
        manager = ManagerData(
            available=True, clients_by_country=[CountryStats(country="A", connections=3)]
        )
        result = select_country_stats(manager, 0, self.observed)
        assert result is not None
        assert [(c.country, c.connections) for c in result] == [("A", 3)]

    def test_falls_back_to_observed(self):
        result = select_country_stats(ManagerData(), 8, self.observed)
        assert result is not None
        assert [(c.country, c.connections) for c in result] == [("FR", 3)]

    def test_empty_is_none(self):
        assert select_country_stats(ManagerData(available=True), 5, [[], []]) is None


class TestMergeSettings:
    """Tests for settings aggregation."""

    def test_max_and_or(self):
        merged = merge_settings(
            [
                ContainerSettings(max_clients=100, bandwidth_limit_mbps=5, auto_start=False),
                None,
                ContainerSettings(max_clients=50, bandwidth_limit_mbps=20, auto_start=True),
            ]
        )
        assert merged == ContainerSettings(
            max_clients=100, bandwidth_limit_mbps=20, auto_start=True
        )

    def test_manager_values_take_precedence(self):
        merged = merge_settings(
            [ContainerSettings(max_clients=100, bandwidth_limit_mbps=5)],
            ManagerSettings(max_clients=250, bandwidth=0),
        )
        assert merged is not None
        assert merged.max_clients == 250
        assert merged.bandwidth_limit_mbps == 5

    def test_all_zero_is_none(self):
        assert merge_settings([ContainerSettings(), None]) is None


class TestCollectTarget:
    """Tests for per-target collection and degradation."""

    def test_metrics_timeout_leaves_only_app_metrics_null(
        self, config: AgentConfig, runtime: MagicMock
    ):
        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text",
            side_effect=MetricsUnavailableError("timed out"),
        ):
            status = make_orchestrator(config, runtime).collect()

        assert status.total_containers == 1
        info = status.containers[0]
        assert info.app_metrics is None
        assert info.status == "running"
        assert info.cpu_percent == 20.0
        assert info.memory_mb == 64.0
        assert info.uptime == "1h0m0s"
        assert info.health is not None
        assert info.health.restart_count == 1
        assert info.settings == ContainerSettings(auto_start=True)
        assert status.connected_clients == 0

    def test_metrics_endpoint_url(self, config: AgentConfig, runtime: MagicMock):
        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text", return_value=METRICS_TEXT
        ) as mock_fetch:
            status = make_orchestrator(config, runtime).collect()

        mock_fetch.assert_called_once_with("http://172.17.0.3:9090/metrics", 3.0)
        info = status.containers[0]
        assert info.app_metrics is not None
        assert info.app_metrics.connected_clients == 12
        assert info.settings == ContainerSettings(
            max_clients=100, bandwidth_limit_mbps=10.0, auto_start=True
        )
        runtime.logs.assert_not_called()

    def test_log_fallback(self, config: AgentConfig, runtime: MagicMock):
        runtime.logs.return_value = (
            b"[STATS] Connecting: 1 | Connected: 9 | Up: 1 KB | Down: 2 KB\n"
        )
        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text",
            side_effect=MetricsUnavailableError("refused"),
        ):
            status = make_orchestrator(config, runtime).collect()

        info = status.containers[0]
        assert info.app_metrics is not None
        assert info.app_metrics.connected_clients == 9
        assert status.connected_clients == 9
        assert status.connecting_clients == 1

    def test_not_running_is_down(self, config: AgentConfig, runtime: MagicMock):
        runtime.discover.return_value = [make_target(1, state="exited")]
        status = make_orchestrator(config, runtime).collect()

        info = status.containers[0]
        assert info.status == "down"
        assert info.uptime == "0s"
        assert info.health is None
        runtime.stats.assert_not_called()

    def test_stats_failure_is_unhealthy(self, config: AgentConfig, runtime: MagicMock):
        runtime.stats.side_effect = APIError("boom")
        with patch("conduit_expose.orchestrator.fetch_metrics_text", return_value=METRICS_TEXT):
            status = make_orchestrator(config, runtime).collect()

        info = status.containers[0]
        assert info.status == "unhealthy"
        assert info.cpu_percent == 0.0
        assert info.app_metrics is not None

    def test_inspect_failure_skips_ip_dependent_steps(
        self, config: AgentConfig, runtime: MagicMock
    ):
        runtime.inspect.side_effect = DockerException("gone")
        with patch("conduit_expose.orchestrator.fetch_metrics_text") as mock_fetch:
            status = make_orchestrator(config, runtime).collect()

        mock_fetch.assert_not_called()
        info = status.containers[0]
        assert info.health is None
        assert info.settings is None
        assert info.app_metrics is None

    def test_connection_table(self, config: AgentConfig, runtime: MagicMock):
        net = config.host_proc_path / "4242" / "net"
        net.mkdir(parents=True)
        (net / "tcp").write_text(TCP_TABLE)

        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text",
            side_effect=MetricsUnavailableError("x"),
        ):
            status = make_orchestrator(config, runtime).collect()

        assert status.connections is not None
        assert status.connections.total == 2
        assert status.connections.states == {"established": 1, "time_wait": 1}


class TestCollectCycle:
    """Tests for the full cycle."""

    def test_discovery_failure_degrades(self, config: AgentConfig, runtime: MagicMock):
        runtime.discover.side_effect = DockerException("daemon down")
        orchestrator = make_orchestrator(config, runtime)
        status = orchestrator.collect()

        assert status.total_containers == 0
        assert status.containers == []
        assert status.server_id == "agent-host"
        assert status.timestamp == int(NOW)
        assert status.session is not None
        assert status.system is not None

    def test_discovery_arguments(self, config: AgentConfig, runtime: MagicMock):
        runtime.discover.return_value = []
        make_orchestrator(config, runtime).collect()
        runtime.discover.assert_called_once_with(
            image="ghcr.io/psiphon-inc/conduit/cli",
            name_prefix="conduit",
            self_hostname="agent-host",
            self_name="conduit-expose",
        )

    def test_results_keep_discovery_order_and_sum(self, config: AgentConfig, runtime: MagicMock):
        runtime.discover.return_value = [make_target(i) for i in range(1, 6)]
        with patch("conduit_expose.orchestrator.fetch_metrics_text", return_value=METRICS_TEXT):
            status = make_orchestrator(config, runtime).collect()

        assert [c.name for c in status.containers] == [f"conduit{i}" for i in range(1, 6)]
        assert status.connected_clients == 60
        assert status.connecting_clients == 10
        assert status.session is not None
        assert status.session.peak_connections == 60
        assert status.session.total_upload_bytes == 5000
        assert status.session.start_time == int(NOW - 600)

    def test_concurrency_is_bounded(self, config: AgentConfig, runtime: MagicMock):
        runtime.discover.return_value = [make_target(i) for i in range(8)]
        lock = threading.Lock()
        active = 0
        peak = 0

        def slow_stats(container_id: str) -> dict:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return stats_response()

        runtime.stats.side_effect = slow_stats
        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text",
            side_effect=MetricsUnavailableError("x"),
        ):
            status = make_orchestrator(config, runtime).collect()

        assert status.total_containers == 8
        assert 1 <= peak <= config.max_workers

    def test_overlapping_cycles_keep_newest_session(
        self, config: AgentConfig, runtime: MagicMock
    ):
        stale = "conduit_connected_clients 10\nconduit_bytes_uploaded 100\n"
        stale += "conduit_bytes_downloaded 100\n"
        fresh = "conduit_connected_clients 40\nconduit_bytes_uploaded 200\n"
        fresh += "conduit_bytes_downloaded 200\n"
        orchestrator = make_orchestrator(config, runtime)
        entered = threading.Event()
        release = threading.Event()
        lock = threading.Lock()
        calls = 0

        def fetch(url: str, timeout: float) -> str:
            nonlocal calls
            with lock:
                calls += 1
                first = calls == 1
            if first:
                entered.set()
                release.wait(timeout=5.0)
                return stale
            return fresh

        with patch("conduit_expose.orchestrator.fetch_metrics_text", side_effect=fetch):
            slow = threading.Thread(target=orchestrator.collect, args=(1,))
            slow.start()
            assert entered.wait(timeout=2.0)
            newer = orchestrator.collect(2)
            release.set()
            slow.join(timeout=5.0)

        assert not slow.is_alive()
        assert newer.connected_clients == 40
        session = orchestrator.session.snapshot()
        assert session.peak_connections == 40
        assert session.avg_connections == 40.0
        assert session.total_upload_bytes == 200

    def test_resume_after_cancel(self, config: AgentConfig, runtime: MagicMock):
        orchestrator = make_orchestrator(config, runtime)
        orchestrator.cancel()
        assert orchestrator.cancelled

        orchestrator.resume()
        assert not orchestrator.cancelled
        with patch("conduit_expose.orchestrator.fetch_metrics_text", return_value=METRICS_TEXT):
            status = orchestrator.collect()
        assert status.containers[0].app_metrics is not None

    def test_manager_data_overrides(self, tmp_path: Path, config: AgentConfig, runtime: MagicMock):
        manager = tmp_path / "manager"
        stats_dir = manager / "traffic_stats"
        stats_dir.mkdir(parents=True)
        (stats_dir / "tracker_snapshot").write_text(
            "FROM|A|1|1.1.1.1\nFROM|A|1|1.1.1.2\nFROM|A|1|1.1.1.3\nFROM|B|1|2.2.2.2\n"
        )
        (stats_dir / "peak_connections").write_text("1600000000\n500\n")
        (stats_dir / "cumulative_data").write_text("A|10|20\n")
        (manager / "settings.conf").write_text("MAX_CLIENTS=300\n")
        config = config.model_copy(update={"manager_data_path": manager})

        with patch("conduit_expose.orchestrator.fetch_metrics_text", return_value=METRICS_TEXT):
            status = make_orchestrator(config, runtime).collect()

        assert status.manager_available is True
        assert status.settings is not None
        assert status.settings.max_clients == 300
        assert status.clients_by_country is not None
        # 12 connected clients split 3:1
        assert [(c.country, c.connections) for c in status.clients_by_country] == [
            ("A", 9),
            ("B", 3),
        ]
        assert status.traffic_by_country is not None
        assert status.session is not None
        assert status.session.peak_connections == 500
        assert status.session.start_time == 1600000000
        assert status.snowflake is None

    def test_snowflake_collected_when_enabled(
        self, tmp_path: Path, config: AgentConfig, runtime: MagicMock
    ):
        manager = tmp_path / "manager"
        manager.mkdir()
        (manager / "settings.conf").write_text("SNOWFLAKE_ENABLED=true\nSNOWFLAKE_COUNT=2\n")
        config = config.model_copy(update={"manager_data_path": manager})
        runtime.discover.return_value = []

        with patch(
            "conduit_expose.orchestrator.collect_snowflake_metrics", return_value=None
        ) as mock_snowflake:
            make_orchestrator(config, runtime).collect()

        mock_snowflake.assert_called_once_with(2, 3.0)

    def test_json_omits_absent_sections(self, config: AgentConfig, runtime: MagicMock):
        with patch(
            "conduit_expose.orchestrator.fetch_metrics_text",
            side_effect=MetricsUnavailableError("x"),
        ):
            status = make_orchestrator(config, runtime).collect()

        data = status.to_json_dict()
        assert "clients_by_country" not in data
        assert "snowflake" not in data
        assert data["containers"][0]["app_metrics"] is None
        assert data["manager_available"] is False


class TestStatusCache:
    """Tests for snapshot publishing."""

    def status(self, timestamp: int) -> StatusResponse:
        return StatusResponse(server_id="h", timestamp=timestamp)

    def test_empty(self):
        assert StatusCache().get() is None

    def test_set_and_get(self):
        cache = StatusCache()
        assert cache.set(self.status(1))
        assert cache.get() == self.status(1)

    def test_stale_cycle_dropped(self):
        cache = StatusCache()
        assert cache.set(self.status(2), sequence=2)
        assert not cache.set(self.status(1), sequence=1)
        assert cache.get().timestamp == 2

    def test_snapshot_is_immutable(self):
        status = self.status(1)
        with pytest.raises(ValueError):
            status.timestamp = 5


class TestPoller:
    """Tests for the periodic driver."""

    def test_run_cycle_publishes(self):
        orchestrator = MagicMock()
        orchestrator.collect.return_value = StatusResponse(server_id="h", timestamp=1)
        cache = StatusCache()

        Poller(orchestrator, cache, interval=60).run_cycle()
        assert cache.get() is not None

    def test_failed_cycle_keeps_previous(self):
        orchestrator = MagicMock()
        orchestrator.collect.side_effect = RuntimeError("bug")
        cache = StatusCache()
        cache.set(StatusResponse(server_id="h", timestamp=1))

        assert Poller(orchestrator, cache, interval=60).run_cycle() is None
        assert cache.get().timestamp == 1

    def test_first_cycle_runs_immediately(self):
        orchestrator = MagicMock()
        done = threading.Event()

        def collect(sequence: int | None = None) -> StatusResponse:
            done.set()
            return StatusResponse(server_id="h", timestamp=1)

        orchestrator.collect.side_effect = collect
        cache = StatusCache()
        poller = Poller(orchestrator, cache, interval=3600)
        poller.start()
        try:
            assert done.wait(timeout=2.0)
        finally:
            poller.stop(timeout=2.0)

        orchestrator.cancel.assert_called_once()
        orchestrator.collect.assert_called_with(1)
        assert cache.get() is not None

    def test_restart_resumes_orchestrator(self):
        orchestrator = MagicMock()
        orchestrator.collect.return_value = StatusResponse(server_id="h", timestamp=1)
        poller = Poller(orchestrator, StatusCache(), interval=3600)

        poller.start()
        poller.stop(timeout=2.0)
        poller.start()
        poller.stop(timeout=2.0)

        assert orchestrator.resume.call_count == 2
        assert orchestrator.cancel.call_count == 2
