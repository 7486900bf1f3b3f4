"""
Unit tests for safety preconditions and the safety monitor.

Tests verify:
- validate_safety reports each violated precondition and nothing else.
- Spike rule: watts at or above the shutdown threshold held for the spike
  window shuts down exactly once; a shorter spike never does.
- Live checks at the default cadence fire on the second spiking check.
- Overcurrent rule: one sample above outlet max_amps shuts down immediately.
- Health rule: a failed or hung health check shuts down with HEALTH_FAIL.
- Emergency shutdown runs turn_off, collector stop, anomaly, ABORTED, and
  deregistration, and keeps going when a step fails.
- Concurrent shutdowns for one run produce one anomaly and one ABORTED.
- start_monitoring is idempotent; stop_monitoring and stop_all drain.

CHANGELOG:
- 2026-10-16: Add live spike test with a slow first query (STORY-013)
- 2026-10-08: Add concurrent shutdown tests (STORY-008)
- 2026-10-08: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from powerbench.src.models import (
    Anomaly,
    AnomalyType,
    ControllerType,
    HealthCheckResult,
    Outlet,
    Profile,
    Reading,
    RunStatus,
    SafetyFlags,
    Station,
)
from powerbench.src.safety import SafetyMonitor, validate_safety

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _reading(watts: float | None = None, amps: float | None = None) -> Reading:
    return Reading(
        id="r",
        test_run_id="run-1",
        ts=datetime(2026, 10, 10, 12, 0, tzinfo=UTC),
        watts=watts,
        amps=amps,
    )


def _make_adapter(health_ok: bool = True) -> MagicMock:
    adapter = MagicMock()
    adapter.turn_off = AsyncMock()
    adapter.health_check = AsyncMock(
        return_value=HealthCheckResult(ok=health_ok, details={"uptime": 10})
    )
    return adapter


def _make_collector() -> MagicMock:
    collector = MagicMock()
    collector.get_latest_reading = AsyncMock(return_value=None)
    collector.stop = MagicMock(return_value=0)
    return collector


def _make_runs() -> MagicMock:
    runs = MagicMock()
    runs.add_anomaly = AsyncMock()
    runs.update_status = AsyncMock()
    return runs


class _Bench:
    """A monitor wired to fakes, with timers far beyond any test's length."""

    def __init__(self, adapter: MagicMock | None = None) -> None:
        self.adapter = adapter or _make_adapter()
        self.collector = _make_collector()
        self.runs = _make_runs()
        self.monitor = SafetyMonitor(
            self.collector,
            self.runs,
            adapter_factory=lambda _t: self.adapter,
            reading_check_interval_ms=60_000,
            spike_window_ms=250,
            health_check_interval_s=600,
            health_timeout_s=0.05,
        )

    async def check_at(self, ms: float, reading: Reading | None) -> None:
        """Run one reading check timed at *ms* on the loop clock."""
        self.collector.get_latest_reading.return_value = reading
        await self.monitor._check_readings("run-1", at=1000.0 + ms / 1000)


@pytest.fixture()
def bench() -> _Bench:
    return _Bench()


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestValidateSafety:
    def test_safe_station_has_no_violations(
        self, station: Station, outlet: Outlet
    ) -> None:
        assert validate_safety(station, outlet) == []

    def test_missing_gfci(self, station: Station, outlet: Outlet) -> None:
        flags = station.safety_flags.model_copy(update={"gfci_present": False})
        station = station.model_copy(update={"safety_flags": flags})

        errors = validate_safety(station, outlet)

        assert len(errors) == 1
        assert "GFCI" in errors[0]

    def test_not_acknowledged(self, station: Station, outlet: Outlet) -> None:
        flags = station.safety_flags.model_copy(update={"acknowledged_by": ""})
        station = station.model_copy(update={"safety_flags": flags})

        assert len(validate_safety(station, outlet)) == 1

    def test_disabled_outlet(self, station: Station, outlet: Outlet) -> None:
        outlet = outlet.model_copy(update={"enabled": False})

        assert validate_safety(station, outlet) == ["Outlet is disabled"]

    def test_no_on_off_support_on_automated_controller(
        self, station: Station, outlet: Outlet
    ) -> None:
        outlet = outlet.model_copy(update={"supports_on_off": False})

        errors = validate_safety(station, outlet)

        assert len(errors) == 1
        assert "on/off" in errors[0]

    def test_no_on_off_support_allowed_on_manual_station(
        self, station: Station, outlet: Outlet
    ) -> None:
        station = station.model_copy(update={"controller_type": ControllerType.MANUAL})
        outlet = outlet.model_copy(update={"supports_on_off": False})

        assert validate_safety(station, outlet) == []

    def test_all_violations_reported(self, outlet: Outlet) -> None:
        station = Station(
            id="station-1",
            controller_type=ControllerType.IOTAWATT_HTTP,
            controller_base_url="http://10.0.0.5",
            safety_flags=SafetyFlags(),
        )
        outlet = outlet.model_copy(update={"enabled": False, "supports_on_off": False})

        assert len(validate_safety(station, outlet)) == 4


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)
        first = bench.monitor._monitored["run-1"]
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        assert bench.monitor._monitored["run-1"] is first
        assert bench.monitor.monitored_count() == 1
        bench.monitor.stop_all()

    @pytest.mark.asyncio
    async def test_stop_cancels_both_checks(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)
        entry = bench.monitor._monitored["run-1"]

        bench.monitor.stop_monitoring("run-1")
        bench.monitor.stop_monitoring("run-1")
        await asyncio.sleep(0)

        assert bench.monitor.is_monitored("run-1") is False
        assert entry.reading_task is not None and not entry.reading_task.running
        assert entry.health_task is not None and not entry.health_task.running

    @pytest.mark.asyncio
    async def test_stop_all(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        for run_id in ("run-1", "run-2"):
            bench.monitor.start_monitoring(run_id, station, outlet, profile)

        assert bench.monitor.stop_all() == 2
        assert bench.monitor.monitored_count() == 0

    @pytest.mark.asyncio
    async def test_unmonitored_run_checks_are_no_ops(self, bench: _Bench) -> None:
        await bench.monitor._check_readings("run-1")
        await bench.monitor._check_health("run-1")

        bench.collector.get_latest_reading.assert_not_awaited()
        bench.adapter.health_check.assert_not_awaited()


# ---------------------------------------------------------------------------
# Spike rule
# ---------------------------------------------------------------------------


class TestSpikeRule:
    @pytest.mark.asyncio
    async def test_sustained_spike_shuts_down_once(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        """2100 W at t=0,100,200,300 ms with a 2000 W threshold."""
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        for ms in (0, 100, 200):
            await bench.check_at(ms, _reading(watts=2100))
            bench.adapter.turn_off.assert_not_awaited()

        await bench.check_at(300, _reading(watts=2100))
        await bench.check_at(400, _reading(watts=2100))

        bench.adapter.turn_off.assert_awaited_once_with(station, outlet)
        bench.collector.stop.assert_called_once_with("run-1")
        bench.runs.add_anomaly.assert_awaited_once()
        anomaly = bench.runs.add_anomaly.call_args[0][1]
        assert anomaly.type == AnomalyType.SPIKE
        assert anomaly.value == 2100
        assert anomaly.threshold == 2000
        bench.runs.update_status.assert_awaited_once_with("run-1", RunStatus.ABORTED)
        assert bench.monitor.is_monitored("run-1") is False

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(watts=2000))
        await bench.check_at(250, _reading(watts=2000))

        bench.runs.add_anomaly.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_short_spike_never_shuts_down(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        """Held for 240 ms, then drops below threshold."""
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        for ms in (0, 100, 200, 240):
            await bench.check_at(ms, _reading(watts=2500))
        await bench.check_at(300, _reading(watts=900))
        await bench.check_at(600, _reading(watts=900))

        bench.adapter.turn_off.assert_not_awaited()
        bench.runs.add_anomaly.assert_not_awaited()
        assert bench.monitor._monitored["run-1"].spike_start is None
        bench.monitor.stop_all()

    @pytest.mark.asyncio
    async def test_dip_resets_spike_window(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(watts=2100))
        await bench.check_at(200, _reading(watts=1900))
        await bench.check_at(250, _reading(watts=2100))
        await bench.check_at(400, _reading(watts=2100))
        bench.runs.add_anomaly.assert_not_awaited()

        await bench.check_at(500, _reading(watts=2100))
        bench.runs.add_anomaly.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_watts_resets_spike_window(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(watts=2100))
        await bench.check_at(100, _reading(watts=None))
        await bench.check_at(300, _reading(watts=2100))

        bench.runs.add_anomaly.assert_not_awaited()
        bench.monitor.stop_all()

    @pytest.mark.asyncio
    async def test_no_reading_yet_is_ignored(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, None)
        await bench.check_at(1000, None)

        bench.runs.add_anomaly.assert_not_awaited()
        bench.monitor.stop_all()


# ---------------------------------------------------------------------------
# Overcurrent rule
# ---------------------------------------------------------------------------


class TestOvercurrentRule:
    @pytest.mark.asyncio
    async def test_single_sample_over_max_amps_shuts_down(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        """max_amps=15; one sample at 16 A."""
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(watts=500, amps=16))

        bench.adapter.turn_off.assert_awaited_once()
        anomaly = bench.runs.add_anomaly.call_args[0][1]
        assert anomaly.type == AnomalyType.OVERCURRENT
        assert anomaly.value == 16
        assert anomaly.threshold == 15
        bench.runs.update_status.assert_awaited_once_with("run-1", RunStatus.ABORTED)

    @pytest.mark.asyncio
    async def test_at_max_amps_is_fine(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(amps=15))

        bench.runs.add_anomaly.assert_not_awaited()
        bench.monitor.stop_all()

    @pytest.mark.asyncio
    async def test_no_ceiling_means_no_overcurrent(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        outlet = outlet.model_copy(update={"max_amps": None})
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.check_at(0, _reading(amps=40))

        bench.runs.add_anomaly.assert_not_awaited()
        bench.monitor.stop_all()


# ---------------------------------------------------------------------------
# Health rule
# ---------------------------------------------------------------------------


class TestHealthRule:
    @pytest.mark.asyncio
    async def test_failed_health_shuts_down(
        self, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench = _Bench(adapter=_make_adapter(health_ok=False))
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.monitor._check_health("run-1")

        bench.adapter.turn_off.assert_awaited_once()
        anomaly = bench.runs.add_anomaly.call_args[0][1]
        assert anomaly.type == AnomalyType.HEALTH_FAIL
        assert '"uptime": 10' in anomaly.message
        bench.runs.update_status.assert_awaited_once_with("run-1", RunStatus.ABORTED)

    @pytest.mark.asyncio
    async def test_healthy_controller_keeps_running(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.monitor._check_health("run-1")

        bench.adapter.health_check.assert_awaited_once_with(station)
        bench.runs.add_anomaly.assert_not_awaited()
        assert bench.monitor.is_monitored("run-1")
        bench.monitor.stop_all()

    @pytest.mark.asyncio
    async def test_hung_health_check_counts_as_failure(
        self, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        async def hang(_station):
            await asyncio.sleep(30)

        adapter = _make_adapter()
        adapter.health_check = AsyncMock(side_effect=hang)
        bench = _Bench(adapter=adapter)
        bench.monitor._health_timeout_s = 0.0
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await asyncio.wait_for(bench.monitor._check_health("run-1"), timeout=5)

        anomaly = bench.runs.add_anomaly.call_args[0][1]
        assert anomaly.type == AnomalyType.HEALTH_FAIL
        assert "timed out" in anomaly.message


# ---------------------------------------------------------------------------
# Emergency shutdown
# ---------------------------------------------------------------------------


def _anomaly(kind: AnomalyType = AnomalyType.SPIKE) -> Anomaly:
    return Anomaly(
        type=kind, message="test", timestamp=datetime(2026, 10, 10, tzinfo=UTC)
    )


class TestEmergencyShutdown:
    @pytest.mark.asyncio
    async def test_steps_run_in_order(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        calls: list[str] = []
        bench.adapter.turn_off.side_effect = lambda *_a: calls.append("turn_off")
        bench.collector.stop.side_effect = lambda *_a: calls.append("stop")
        bench.runs.add_anomaly.side_effect = lambda *_a: calls.append("anomaly")
        bench.runs.update_status.side_effect = lambda *_a: calls.append("aborted")
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        assert await bench.monitor.emergency_shutdown("run-1", _anomaly()) is True

        assert calls == ["turn_off", "stop", "anomaly", "aborted"]
        assert bench.monitor.is_monitored("run-1") is False

    @pytest.mark.asyncio
    async def test_failing_steps_do_not_skip_the_rest(
        self,
        bench: _Bench,
        station: Station,
        outlet: Outlet,
        profile: Profile,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        bench.adapter.turn_off.side_effect = RuntimeError("relay welded")
        bench.collector.stop.side_effect = RuntimeError("collector gone")
        bench.runs.add_anomaly.side_effect = RuntimeError("db locked")
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        await bench.monitor.emergency_shutdown("run-1", _anomaly())

        bench.runs.update_status.assert_awaited_once_with("run-1", RunStatus.ABORTED)
        assert bench.monitor.is_monitored("run-1") is False
        assert "EMERGENCY SHUTDOWN" in caplog.text
        assert "Recording anomaly failed" in caplog.text

    @pytest.mark.asyncio
    async def test_unmonitored_run_is_a_no_op(self, bench: _Bench) -> None:
        assert await bench.monitor.emergency_shutdown("run-1", _anomaly()) is False

        bench.adapter.turn_off.assert_not_awaited()
        bench.runs.update_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_shutdowns_abort_once(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        """A spike and a health failure racing on the same run."""
        release = asyncio.Event()

        async def slow_turn_off(*_args):
            await release.wait()

        bench.adapter.turn_off.side_effect = slow_turn_off
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        first = asyncio.create_task(
            bench.monitor.emergency_shutdown("run-1", _anomaly(AnomalyType.SPIKE))
        )
        await asyncio.sleep(0)
        second = await bench.monitor.emergency_shutdown(
            "run-1", _anomaly(AnomalyType.HEALTH_FAIL)
        )
        release.set()

        assert await first is True
        assert second is False
        bench.adapter.turn_off.assert_awaited_once()
        bench.runs.add_anomaly.assert_awaited_once()
        assert bench.runs.add_anomaly.call_args[0][1].type == AnomalyType.SPIKE
        bench.runs.update_status.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reading_check_skipped_while_shutting_down(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        release = asyncio.Event()

        async def slow_turn_off(*_args):
            await release.wait()

        bench.adapter.turn_off.side_effect = slow_turn_off
        bench.monitor.start_monitoring("run-1", station, outlet, profile)
        shutdown = asyncio.create_task(
            bench.monitor.emergency_shutdown("run-1", _anomaly(AnomalyType.HEALTH_FAIL))
        )
        await asyncio.sleep(0)

        await bench.check_at(0, _reading(amps=99))
        release.set()
        await shutdown

        bench.collector.get_latest_reading.assert_not_awaited()
        bench.runs.add_anomaly.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_operator_stop_during_read_suppresses_shutdown(
        self, bench: _Bench, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        """A run deregistered while its latest reading is being fetched."""
        bench.monitor.start_monitoring("run-1", station, outlet, profile)

        async def stop_then_return(_run_id):
            bench.monitor.stop_monitoring("run-1")
            return _reading(amps=99)

        bench.collector.get_latest_reading.side_effect = stop_then_return

        await bench.monitor._check_readings("run-1")

        bench.adapter.turn_off.assert_not_awaited()
        bench.runs.add_anomaly.assert_not_awaited()


# ---------------------------------------------------------------------------
# Live ticking
# ---------------------------------------------------------------------------


class TestLiveMonitoring:
    @pytest.mark.asyncio
    async def test_overcurrent_detected_by_periodic_check(
        self, station: Station, outlet: Outlet, profile: Profile
    ) -> None:
        adapter = _make_adapter()
        collector = _make_collector()
        collector.get_latest_reading.return_value = _reading(amps=20)
        runs = _make_runs()
        monitor = SafetyMonitor(
            collector,
            runs,
            adapter_factory=lambda _t: adapter,
            reading_check_interval_ms=20,
            health_check_interval_s=600,
        )

        monitor.start_monitoring("run-1", station, outlet, profile)
        for _ in range(50):
            if not monitor.is_monitored("run-1"):
                break
            await asyncio.sleep(0.02)

        assert monitor.is_monitored("run-1") is False
        runs.add_anomaly.assert_awaited_once()
        runs.update_status.assert_awaited_once_with("run-1", RunStatus.ABORTED)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("first_query_delay_s", [0.0, 0.02, 0.1])
    async def test_sustained_spike_fires_on_second_check(
        self,
        first_query_delay_s: float,
        station: Station,
        outlet: Outlet,
        profile: Profile,
    ) -> None:
        """A slow first query does not push the shutdown to a third check."""
        calls = 0

        async def latest(_run_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(first_query_delay_s)
            return _reading(watts=2100)

        adapter = _make_adapter()
        collector = _make_collector()
        collector.get_latest_reading = AsyncMock(side_effect=latest)
        runs = _make_runs()
        monitor = SafetyMonitor(
            collector,
            runs,
            adapter_factory=lambda _t: adapter,
            health_check_interval_s=600,
        )

        monitor.start_monitoring("run-1", station, outlet, profile)
        for _ in range(100):
            if not monitor.is_monitored("run-1"):
                break
            await asyncio.sleep(0.02)

        assert monitor.is_monitored("run-1") is False
        assert calls == 2
        runs.add_anomaly.assert_awaited_once()
        assert runs.add_anomaly.call_args[0][1].type == AnomalyType.SPIKE
        adapter.turn_off.assert_awaited_once_with(station, outlet)
