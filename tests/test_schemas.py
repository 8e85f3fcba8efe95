"""Tests for conduit-expose schemas."""

import pytest
from pydantic import ValidationError

from conduit_expose.core.schemas import (
    AppMetrics,
    ConnectionStats,
    ContainerInfo,
    ContainerSettings,
    SessionInfo,
    StatusResponse,
    SystemMetrics,
)


class TestContainerInfo:
    """Tests for ContainerInfo schema."""

    def test_defaults(self):
        """A bare container is reported as down with no sub-results."""
        info = ContainerInfo(id="abc123def456", name="conduit")
        assert info.status == "down"
        assert info.uptime == "0s"
        assert info.app_metrics is None
        assert info.health is None

    def test_rejects_negative_memory(self):
        with pytest.raises(ValidationError):
            ContainerInfo(id="x", name="y", memory_mb=-1)


class TestAppMetrics:
    """Tests for AppMetrics schema."""

    def test_rejects_negative_counts(self):
        with pytest.raises(ValidationError):
            AppMetrics(connected_clients=-1)


class TestEmptiness:
    """Tests for the is_empty helpers used by the merge."""

    def test_connection_stats(self):
        assert ConnectionStats().is_empty()
        assert ConnectionStats(states={"established": 0}).is_empty()
        assert not ConnectionStats(total=1).is_empty()

    def test_container_settings(self):
        assert ContainerSettings().is_empty()
        assert not ContainerSettings(auto_start=True).is_empty()


class TestStatusResponse:
    """Tests for the published snapshot."""

    def test_to_json_dict_omits_none_sections(self):
        status = StatusResponse(
            server_id="host",
            timestamp=1700000000,
            system=SystemMetrics(cpu_percent=12.5),
            session=SessionInfo(start_time=1699990000),
            containers=[ContainerInfo(id="abc", name="conduit", status="running")],
        )
        data = status.to_json_dict()

        assert data["server_id"] == "host"
        assert data["system"]["cpu_percent"] == 12.5
        assert data["session"]["start_time"] == 1699990000
        for key in ("settings", "connections", "clients_by_country", "snowflake"):
            assert key not in data
        container = data["containers"][0]
        assert container["app_metrics"] is None
        assert container["health"] is None

    def test_frozen(self):
        status = StatusResponse(server_id="host", timestamp=1)
        with pytest.raises(ValidationError):
            status.server_id = "other"
