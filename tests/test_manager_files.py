"""Tests for the Conduit Manager flat-file reader."""

from pathlib import Path

import pytest

from conduit_expose.monitoring.manager_files import (
    ManagerSettings,
    parse_timestamp,
    read_cumulative_data,
    read_manager_data,
    read_manager_settings,
    read_peak_connections,
    read_tracker_snapshot,
    safe_read_lines,
)


@pytest.fixture
def manager_dir(tmp_path: Path) -> Path:
    """A complete manager data directory."""
    data = tmp_path / "conduit"
    stats = data / "traffic_stats"
    stats.mkdir(parents=True)
    (stats / "tracker_snapshot").write_text(
        "FROM|US|1000|1.1.1.1\n"
        "TO|US|2000|1.1.1.1\n"
        "FROM|US|500|2.2.2.2\n"
        "FROM|DE|700|3.3.3.3\n"
        "FROM|US|100|4.4.4.4\n"
    )
    (stats / "cumulative_data").write_text("US|1000|2000\nDE|50|60\nUS|10|20\n")
    (stats / "peak_connections").write_text("2024-05-01T12:00:00Z\n87\n")
    (data / "settings.conf").write_text(
        '# Conduit Manager settings\nMAX_CLIENTS="250"\nBANDWIDTH=40\nCONTAINER_COUNT=3\n'
        "SNOWFLAKE_ENABLED=true\nSNOWFLAKE_COUNT=2\nUNRELATED=x\n"
    )
    return data


class TestSafeReadLines:
    """Tests for partial-write handling."""

    def test_complete_file(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("a\nb\n")
        assert safe_read_lines(path) == ["a", "b"]

    def test_partial_last_line_dropped(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("a\nb\nhalf-writ")
        assert safe_read_lines(path) == ["a", "b"]

    def test_missing_file(self, tmp_path: Path):
        assert safe_read_lines(tmp_path / "missing") == []

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "f"
        path.write_text("")
        assert safe_read_lines(path) == []


class TestTrackerSnapshot:
    """Tests for tracker_snapshot parsing."""

    def test_counts_unique_ips_per_country(self, manager_dir: Path):
        stats = read_tracker_snapshot(manager_dir / "traffic_stats" / "tracker_snapshot")
        assert [(c.country, c.connections) for c in stats] == [("US", 3), ("DE", 1)]

    def test_skips_short_and_partial_lines(self, tmp_path: Path):
        path = tmp_path / "tracker_snapshot"
        path.write_text("FROM|US|1000\nFROM||10|5.5.5.5\nFROM|FR|10|6.6.6.6\nFROM|IT|1|7.7")
        stats = read_tracker_snapshot(path)
        assert [(c.country, c.connections) for c in stats] == [("FR", 1)]


class TestCumulativeData:
    """Tests for cumulative_data parsing."""

    def test_sums_per_country(self, manager_dir: Path):
        stats = read_cumulative_data(manager_dir / "traffic_stats" / "cumulative_data")
        assert stats[0].country == "US"
        assert stats[0].from_bytes == 1010
        assert stats[0].to_bytes == 2020
        assert stats[1].country == "DE"

    def test_skips_invalid_numbers(self, tmp_path: Path):
        path = tmp_path / "cumulative_data"
        path.write_text("US|abc|1\nDE|1|2\n")
        stats = read_cumulative_data(path)
        assert [c.country for c in stats] == ["DE"]


class TestPeakConnections:
    """Tests for peak_connections parsing."""

    def test_reads_start_and_peak(self, manager_dir: Path):
        start, peak = read_peak_connections(manager_dir / "traffic_stats" / "peak_connections")
        assert start == 1714564800
        assert peak == 87

    def test_single_line_is_unavailable(self, tmp_path: Path):
        path = tmp_path / "peak_connections"
        path.write_text("2024-05-01T12:00:00Z\n87")  # second line not yet terminated
        assert read_peak_connections(path) == (0, 0)

    @pytest.mark.parametrize(
        "value,expected",
        [("1714564800", 1714564800), ("2024-05-01T12:00:00+00:00", 1714564800), ("junk", 0)],
    )
    def test_parse_timestamp(self, value: str, expected: int):
        assert parse_timestamp(value) == expected


class TestManagerSettings:
    """Tests for settings.conf parsing."""

    def test_reads_recognized_keys(self, manager_dir: Path):
        settings = read_manager_settings(manager_dir / "settings.conf")
        assert settings == ManagerSettings(
            max_clients=250,
            bandwidth=40.0,
            container_count=3,
            snowflake_enabled=True,
            snowflake_count=2,
        )

    def test_no_recognized_keys(self, tmp_path: Path):
        path = tmp_path / "settings.conf"
        path.write_text("FOO=1\n# comment\n")
        assert read_manager_settings(path) is None

    def test_invalid_values_skipped(self, tmp_path: Path):
        path = tmp_path / "settings.conf"
        path.write_text("MAX_CLIENTS=lots\nBANDWIDTH='5.5'\n")
        settings = read_manager_settings(path)
        assert settings is not None
        assert settings.max_clients == 0
        assert settings.bandwidth == 5.5


class TestReadManagerData:
    """Tests for the combined reader."""

    def test_missing_directory(self, tmp_path: Path):
        data = read_manager_data(tmp_path / "absent")
        assert data.available is False
        assert data.clients_by_country == []
        assert data.settings is None

    def test_full_directory(self, manager_dir: Path):
        data = read_manager_data(manager_dir)
        assert data.available is True
        assert sum(c.connections for c in data.clients_by_country) == 4
        assert data.peak_connections == 87
        assert data.tracker_start == 1714564800
        assert data.settings is not None
        assert data.settings.snowflake_count == 2
        assert len(data.traffic_by_country) == 2

    def test_directory_without_files(self, tmp_path: Path):
        data = read_manager_data(tmp_path)
        assert data.available is True
        assert data.clients_by_country == []
        assert data.peak_connections == 0
