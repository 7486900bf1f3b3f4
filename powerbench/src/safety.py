"""
Safety monitor: watches live test runs and de-energizes on violations.

Auto-shutdown rules, evaluated per monitored run:

1. Spike: watts >= ``profile.thresholds.spike_shutdown_watts`` continuously
   for at least the spike window (250 ms) -> SPIKE anomaly. Dropping below
   the threshold at any check resets the window. Scheduled checks are timed
   by their deadline, so two spiking checks one window apart always fire.
2. Overcurrent: amps > ``outlet.max_amps`` on any single reading ->
   OVERCURRENT anomaly, no debounce.
3. Health: the controller health check fails -> HEALTH_FAIL anomaly.

The reading check never polls the adapter; it evaluates the latest reading
persisted by the :class:`~powerbench.src.collector.ReadingsCollector`.

Emergency shutdown runs in a fixed order (turn off, stop collecting, record
anomaly, mark ABORTED, deregister). Each step is best-effort so a failure in
one does not skip the rest. The first shutdown to claim a run wins; any
later or concurrent attempt for the same run is a no-op, so a run gets
exactly one anomaly and one ABORTED update.

CHANGELOG:
- 2026-10-16: Time spike windows by check deadline, not query completion (STORY-013)
- 2026-10-08: Claim runs before shutdown so racing checks cannot double-abort (STORY-008)
- 2026-10-08: Initial creation (STORY-008)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from powerbench.src.adapters import get_adapter
from powerbench.src.models import (
    Anomaly,
    AnomalyType,
    ControllerType,
    HealthCheckResult,
    RunStatus,
)
from powerbench.src.scheduler import PeriodicTask

if TYPE_CHECKING:
    from powerbench.src.adapters import PowerControllerAdapter
    from powerbench.src.collector import ReadingsCollector
    from powerbench.src.models import Outlet, Profile, Reading, Station

logger = logging.getLogger(__name__)

SPIKE_WINDOW_MS: int = 250
"""Minimum continuous duration of a spike before shutdown."""

READING_CHECK_INTERVAL_MS: int = 250
"""Cadence of the reading check."""

HEALTH_CHECK_INTERVAL_S: float = 30.0
"""Cadence of the controller health check."""

_TIMEOUT_GRACE_S: float = 1.0

# Absorbs float error in deadline arithmetic; far below any check interval.
_SPIKE_WINDOW_TOLERANCE_S: float = 0.001


class RunRecorder(Protocol):
    """The part of the test run manager the monitor writes through."""

    async def add_anomaly(self, run_id: str, anomaly: Anomaly) -> None: ...

    async def update_status(self, run_id: str, status: RunStatus) -> object: ...


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def validate_safety(station: Station, outlet: Outlet) -> list[str]:
    """Return the violated pre-energize preconditions.

    An empty list means the outlet is safe to energize.
    """
    errors: list[str] = []
    if not station.safety_flags.gfci_present:
        errors.append("GFCI presence not acknowledged for this station")
    if not station.safety_flags.acknowledged_by:
        errors.append("Station safety not acknowledged by any operator")
    if not outlet.enabled:
        errors.append("Outlet is disabled")
    if not outlet.supports_on_off and station.controller_type != ControllerType.MANUAL:
        errors.append("Outlet does not support automated on/off control")
    return errors


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


@dataclass
class _MonitoredRun:
    run_id: str
    station: Station
    outlet: Outlet
    profile: Profile
    adapter: PowerControllerAdapter
    spike_start: float | None = None
    shutting_down: bool = False
    reading_task: PeriodicTask | None = None
    health_task: PeriodicTask | None = None


class SafetyMonitor:
    """Registry of monitored runs with their reading and health checks.

    Args:
        collector: Source of the latest persisted reading; stopped on shutdown.
        runs: Records anomalies and run status.
        adapter_factory: Resolves a controller-type string to an adapter.
        reading_check_interval_ms: Reading check cadence.
        spike_window_ms: Spike debounce window.
        health_check_interval_s: Health check cadence.
        health_timeout_s: Adapter health timeout; a check that has not
            answered slightly after it is treated as failed.
    """

    def __init__(
        self,
        collector: ReadingsCollector,
        runs: RunRecorder,
        *,
        adapter_factory: Callable[[str], PowerControllerAdapter] = get_adapter,
        reading_check_interval_ms: int = READING_CHECK_INTERVAL_MS,
        spike_window_ms: int = SPIKE_WINDOW_MS,
        health_check_interval_s: float = HEALTH_CHECK_INTERVAL_S,
        health_timeout_s: float = 5.0,
    ) -> None:
        self._collector = collector
        self._runs = runs
        self._adapter_factory = adapter_factory
        self._reading_check_interval_s = reading_check_interval_ms / 1000
        self._spike_window_s = spike_window_ms / 1000
        self._health_check_interval_s = health_check_interval_s
        self._health_timeout_s = health_timeout_s
        self._monitored: dict[str, _MonitoredRun] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def start_monitoring(
        self,
        run_id: str,
        station: Station,
        outlet: Outlet,
        profile: Profile,
    ) -> None:
        """Register *run_id* and start its reading and health checks.

        No-op when the run is already monitored. Must be called from a
        running event loop.

        Raises:
            ConfigurationError: If the station's controller type is unknown.
        """
        if run_id in self._monitored:
            return

        entry = _MonitoredRun(
            run_id=run_id,
            station=station,
            outlet=outlet,
            profile=profile,
            adapter=self._adapter_factory(station.controller_type),
        )
        entry.reading_task = PeriodicTask(
            f"safety-readings:{run_id}",
            self._reading_check_interval_s,
            lambda: self._scheduled_reading_check(entry),
        )
        entry.health_task = PeriodicTask(
            f"safety-health:{run_id}",
            self._health_check_interval_s,
            lambda: self._check_health(run_id),
        )
        self._monitored[run_id] = entry
        entry.reading_task.start()
        entry.health_task.start()
        logger.info(
            "Safety monitoring started for run %s (spike>=%sW, max_amps=%s)",
            run_id,
            profile.thresholds.spike_shutdown_watts,
            outlet.max_amps,
        )

    def stop_monitoring(self, run_id: str) -> None:
        """Cancel both checks for *run_id* and deregister it. Idempotent."""
        entry = self._monitored.pop(run_id, None)
        if entry is None:
            return
        for task in (entry.reading_task, entry.health_task):
            if task is not None:
                task.cancel()
        logger.info("Safety monitoring stopped for run %s", run_id)

    def stop_all(self) -> int:
        """Stop monitoring every run (process shutdown).

        Returns:
            Number of runs deregistered.
        """
        run_ids = list(self._monitored)
        for run_id in run_ids:
            self.stop_monitoring(run_id)
        return len(run_ids)

    def is_monitored(self, run_id: str) -> bool:
        return run_id in self._monitored

    def monitored_count(self) -> int:
        return len(self._monitored)

    # ------------------------------------------------------------------
    # Periodic checks
    # ------------------------------------------------------------------

    def _live_entry(self, run_id: str) -> _MonitoredRun | None:
        entry = self._monitored.get(run_id)
        if entry is None or entry.shutting_down:
            return None
        return entry

    async def _scheduled_reading_check(self, entry: _MonitoredRun) -> None:
        task = entry.reading_task
        await self._check_readings(
            entry.run_id, at=task.scheduled_at if task is not None else None
        )

    async def _check_readings(self, run_id: str, at: float | None = None) -> None:
        """Evaluate the latest reading for *run_id* as of loop time *at*.

        *at* defaults to the current loop time, taken before the query.
        """
        entry = self._live_entry(run_id)
        if entry is None:
            return
        now = asyncio.get_running_loop().time() if at is None else at

        latest = await self._collector.get_latest_reading(run_id)
        # The run may have been stopped or claimed while the query was running.
        if latest is None or self._live_entry(run_id) is not entry:
            return

        anomaly = self._evaluate_reading(entry, latest, now)
        if anomaly is not None:
            await self.emergency_shutdown(run_id, anomaly)

    def _evaluate_reading(
        self, entry: _MonitoredRun, latest: Reading, now: float
    ) -> Anomaly | None:
        thresholds = entry.profile.thresholds

        if latest.watts is not None and latest.watts >= thresholds.spike_shutdown_watts:
            if entry.spike_start is None:
                entry.spike_start = now
            elif (
                now - entry.spike_start
                >= self._spike_window_s - _SPIKE_WINDOW_TOLERANCE_S
            ):
                window_ms = round(self._spike_window_s * 1000)
                return Anomaly(
                    type=AnomalyType.SPIKE,
                    message=(
                        f"Power spike {latest.watts}W exceeded shutdown threshold "
                        f"{thresholds.spike_shutdown_watts}W for >={window_ms}ms"
                    ),
                    timestamp=datetime.now(tz=UTC),
                    value=latest.watts,
                    threshold=thresholds.spike_shutdown_watts,
                )
        else:
            entry.spike_start = None

        max_amps = entry.outlet.max_amps
        if latest.amps is not None and max_amps and latest.amps > max_amps:
            return Anomaly(
                type=AnomalyType.OVERCURRENT,
                message=f"Current {latest.amps}A exceeds outlet max {max_amps}A",
                timestamp=datetime.now(tz=UTC),
                value=latest.amps,
                threshold=max_amps,
            )
        return None

    async def _check_health(self, run_id: str) -> None:
        entry = self._live_entry(run_id)
        if entry is None:
            return

        timeout_s = self._health_timeout_s + _TIMEOUT_GRACE_S
        try:
            health = await asyncio.wait_for(
                entry.adapter.health_check(entry.station), timeout=timeout_s
            )
        except TimeoutError:
            health = HealthCheckResult(
                ok=False,
                details={"error": f"health check timed out after {timeout_s:.1f}s"},
            )

        if self._live_entry(run_id) is not entry or health.ok:
            return

        await self.emergency_shutdown(
            run_id,
            Anomaly(
                type=AnomalyType.HEALTH_FAIL,
                message=(
                    "Controller health check failed: "
                    + json.dumps(health.details, default=str)
                ),
                timestamp=datetime.now(tz=UTC),
            ),
        )

    # ------------------------------------------------------------------
    # Emergency shutdown
    # ------------------------------------------------------------------

    async def emergency_shutdown(self, run_id: str, anomaly: Anomaly) -> bool:
        """De-energize the run's outlet and abort the run.

        Returns:
            ``True`` if this call performed the shutdown, ``False`` if the run
            was not monitored or another shutdown had already claimed it.
        """
        entry = self._live_entry(run_id)
        if entry is None:
            return False
        entry.shutting_down = True

        logger.error(
            "EMERGENCY SHUTDOWN for run %s: %s", run_id, anomaly.message
        )

        # 1. De-energize. Adapters never raise here by contract.
        try:
            await entry.adapter.turn_off(entry.station, entry.outlet)
        except Exception:
            logger.error("turn_off raised during shutdown of run %s", run_id, exc_info=True)

        # 2. Stop collecting readings.
        try:
            self._collector.stop(run_id)
        except Exception:
            logger.error("Collector stop failed for run %s", run_id, exc_info=True)

        # 3. Record the anomaly.
        try:
            await self._runs.add_anomaly(run_id, anomaly)
        except Exception:
            logger.error("Recording anomaly failed for run %s", run_id, exc_info=True)

        # 4. Abort the run. A no-op if the run already finished on its own.
        try:
            await self._runs.update_status(run_id, RunStatus.ABORTED)
        except Exception:
            logger.error("Aborting run %s failed", run_id, exc_info=True)

        # 5. Stop our own checks, unless the run was re-registered meanwhile.
        if self._monitored.get(run_id) is entry:
            self.stop_monitoring(run_id)
        return True
