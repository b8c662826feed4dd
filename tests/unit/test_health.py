"""
Unit tests for health checks
Tests dependency aggregation, timeouts and optional dependencies
"""

import asyncio

import pytest

from src.observability.health import HealthMonitor, HealthStatus, timed_check


async def up() -> bool:
    return True


async def down() -> bool:
    return False


async def broken() -> bool:
    raise ConnectionError("refused")


async def hangs() -> bool:
    await asyncio.sleep(10)
    return True


class TestHealthStatus:
    """Test overall status computation"""

    def test_no_dependencies_is_unhealthy(self):
        assert HealthStatus().overall == "unhealthy"

    def test_all_up_is_healthy(self):
        status = HealthStatus()
        status.record("event_store", True, 1.0)
        status.record("channel", True, 2.0)

        assert status.overall == "healthy"

    def test_optional_down_is_degraded(self):
        status = HealthStatus(optional={"analytics_sink"})
        status.record("event_store", True, 1.0)
        status.record("analytics_sink", False, 1.0)

        assert status.overall == "degraded"

    def test_required_down_is_unhealthy(self):
        status = HealthStatus(optional={"analytics_sink"})
        status.record("event_store", False, 1.0)
        status.record("analytics_sink", True, 1.0)

        assert status.overall == "unhealthy"

    def test_to_dict(self):
        status = HealthStatus()
        status.record("event_store", True, 1.234)

        data = status.to_dict()

        assert data["status"] == "healthy"
        assert data["dependencies"]["event_store"]["latency_ms"] == 1.23
        assert "uptime_seconds" in data
        assert "version" in data


class TestHealthMonitor:
    """Test running checks"""

    @pytest.mark.asyncio
    async def test_timed_check_failures_are_down(self):
        assert (await timed_check(broken))[0] is False
        assert (await timed_check(hangs, timeout_seconds=0.05))[0] is False

    @pytest.mark.asyncio
    async def test_run_checks(self):
        monitor = HealthMonitor(
            {"event_store": up, "channel": down, "analytics_sink": up},
            timeout_seconds=0.5,
        )

        data = await monitor.run_checks()

        assert data["status"] == "unhealthy"
        assert data["dependencies"]["event_store"]["status"] == "up"
        assert data["dependencies"]["channel"]["status"] == "down"

    @pytest.mark.asyncio
    async def test_optional_sink_outage_degrades(self):
        monitor = HealthMonitor(
            {"event_store": up, "channel": up, "analytics_sink": broken},
            optional={"analytics_sink"},
        )

        data = await monitor.run_checks()

        assert data["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_added_check_is_required(self):
        monitor = HealthMonitor({"event_store": up, "analytics_sink": down}, optional={"analytics_sink"})
        monitor.add_check("delivery_worker", down)

        data = await monitor.run_checks()

        assert data["status"] == "unhealthy"
        assert data["dependencies"]["delivery_worker"]["status"] == "down"
