"""
Test run manager: run lifecycle, status transitions, anomalies, and scoring.

Status machine::

    PENDING -> IN_PROGRESS -> {COMPLETED, FAILED, ABORTED}
    PENDING -> {FAILED, ABORTED}

COMPLETED, FAILED and ABORTED are terminal. Setting a status on a terminal
run is a no-op rather than an error, because an emergency shutdown can race
with a run's own completion or an operator stop.

An outlet can be claimed by at most one non-terminal run at a time.

CHANGELOG:
- 2026-10-16: Round half-point range penalties up (STORY-013)
- 2026-10-10: Reject runs on outlets claimed by another active run (STORY-010)
- 2026-10-09: Add result scoring and operator checklist (STORY-009)
- 2026-10-09: Initial creation (STORY-009)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from powerbench.src.adapters import get_adapter
from powerbench.src.errors import (
    ConfigurationError,
    InvalidTransitionError,
    OutletInUseError,
    RunNotFoundError,
    SafetyPreconditionError,
)
from powerbench.src.models import RunResult, RunStatus, TestRun
from powerbench.src.safety import SafetyMonitor, validate_safety

if TYPE_CHECKING:
    from powerbench.src.adapters import PowerControllerAdapter
    from powerbench.src.collector import ReadingsCollector
    from powerbench.src.models import Anomaly, Outlet, Profile, Reading, Station
    from powerbench.src.store import BenchStore

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset(
        {RunStatus.IN_PROGRESS, RunStatus.FAILED, RunStatus.ABORTED}
    ),
    RunStatus.IN_PROGRESS: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED}
    ),
}


class TestRunManager:
    """Owns run status and the anomaly log, and drives run lifecycles.

    Args:
        store: Run and reading persistence.
        collector: Readings collector started/stopped with each run.
        adapter_factory: Resolves a controller-type string to an adapter.
        monitor: Safety monitor to use. When omitted one is built that
            writes back through this manager, using *monitor_options*.
        now: Clock returning timezone-aware datetimes.
        **monitor_options: Keyword arguments for the default
            :class:`SafetyMonitor`.
    """

    # Keep pytest from collecting this class.
    __test__ = False

    def __init__(
        self,
        store: BenchStore,
        collector: ReadingsCollector,
        *,
        adapter_factory: Callable[[str], PowerControllerAdapter] = get_adapter,
        monitor: SafetyMonitor | None = None,
        now: Callable[[], datetime] | None = None,
        **monitor_options: Any,
    ) -> None:
        self._store = store
        self._collector = collector
        self._adapter_factory = adapter_factory
        self._now = now or (lambda: datetime.now(tz=UTC))
        if monitor is None:
            monitor = SafetyMonitor(
                collector, self, adapter_factory=adapter_factory, **monitor_options
            )
        self.monitor = monitor

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create_run(
        self,
        qlid: str,
        station: Station,
        outlet: Outlet,
        profile: Profile,
        operator_id: str | None = None,
    ) -> TestRun:
        """Create a PENDING run for *qlid* on *outlet*.

        Raises:
            ConfigurationError: If the outlet does not belong to the station.
            OutletInUseError: If another non-terminal run claims the outlet.
        """
        _check_outlet_belongs(station, outlet)
        claimed = await self._store.active_run_for_outlet(outlet.id)
        if claimed is not None:
            raise OutletInUseError(
                f"Outlet {outlet.id} is already claimed by run {claimed.id} "
                f"({claimed.status})"
            )

        run = TestRun(
            id=str(uuid.uuid4()),
            qlid=qlid,
            station_id=station.id,
            outlet_id=outlet.id,
            profile_id=profile.id,
            operator_id=operator_id,
            status=RunStatus.PENDING,
            created_at=self._now(),
        )
        await self._store.insert_run(run)
        logger.info("Created run %s for %s on outlet %s", run.id, qlid, outlet.id)
        return run

    async def get_run(self, run_id: str) -> TestRun | None:
        return await self._store.get_run(run_id)

    async def require_run(self, run_id: str) -> TestRun:
        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Test run not found: {run_id}")
        return run

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        station_id: str | None = None,
        limit: int = 100,
    ) -> list[TestRun]:
        return await self._store.list_runs(
            status=status, station_id=station_id, limit=limit
        )

    async def update_status(self, run_id: str, status: RunStatus) -> TestRun:
        """Move a run to *status*.

        Returns the unchanged run when it is already terminal or already in
        *status*.

        Raises:
            RunNotFoundError: If the run does not exist.
            InvalidTransitionError: If a non-terminal run would move backwards.
        """
        run = await self.require_run(run_id)
        if run.status.is_terminal:
            if run.status != status:
                logger.info(
                    "Ignoring %s for run %s: already %s", status, run_id, run.status
                )
            return run
        if run.status == status:
            return run
        if status not in _ALLOWED_TRANSITIONS[run.status]:
            raise InvalidTransitionError(
                f"Run {run_id} cannot move from {run.status} to {status}"
            )

        now = self._now()
        fields: dict[str, Any] = {"status": status, "updated_at": now}
        if status == RunStatus.IN_PROGRESS and run.started_at is None:
            fields["started_at"] = now
        if status.is_terminal:
            fields["ended_at"] = now
        await self._store.update_run(run_id, **fields)
        logger.info("Run %s: %s -> %s", run_id, run.status, status)
        return await self.require_run(run_id)

    async def add_anomaly(self, run_id: str, anomaly: Anomaly) -> None:
        """Append *anomaly* to the run's log.

        Raises:
            RunNotFoundError: If the run does not exist.
        """
        if not await self._store.append_anomaly(run_id, anomaly, self._now()):
            raise RunNotFoundError(f"Test run not found: {run_id}")

    async def set_notes(self, run_id: str, notes: str) -> None:
        await self.require_run(run_id)
        await self._store.update_run(run_id, notes=notes, updated_at=self._now())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_run(
        self,
        run_id: str,
        station: Station,
        outlet: Outlet,
        profile: Profile,
        interval_ms: int | None = None,
    ) -> TestRun:
        """Validate, energize, and start collecting and monitoring a run.

        All configuration and safety checks happen before the outlet is
        energized. If ``turn_on`` fails the run is marked FAILED and the
        adapter error propagates.

        Raises:
            RunNotFoundError: If the run does not exist.
            InvalidTransitionError: If the run is not PENDING.
            SafetyPreconditionError: If :func:`validate_safety` reports
                violations.
            ConfigurationError: On an unknown controller type, a missing
                controller address, or a run/station/outlet mismatch.
            AdapterError: If the controller fails to energize the outlet.
        """
        run = await self.require_run(run_id)
        if run.status != RunStatus.PENDING:
            raise InvalidTransitionError(
                f"Run {run_id} cannot be started from {run.status}"
            )
        _check_run_target(run, station, outlet, profile)

        violations = validate_safety(station, outlet)
        if violations:
            raise SafetyPreconditionError(violations)

        adapter = self._adapter_factory(station.controller_type)
        adapter.check_config(station, outlet)
        if self._collector.is_collecting(run_id):
            raise ConfigurationError(f"Already collecting for test run: {run_id}")

        try:
            await adapter.turn_on(station, outlet)
        except Exception:
            logger.error("Energizing outlet %s failed for run %s", outlet.id, run_id)
            await self.update_status(run_id, RunStatus.FAILED)
            raise

        run = await self.update_status(run_id, RunStatus.IN_PROGRESS)
        self._collector.start(run_id, station, outlet, interval_ms)
        self.monitor.start_monitoring(run_id, station, outlet, profile)
        return run

    async def cancel_run(
        self, run_id: str, station: Station, outlet: Outlet
    ) -> TestRun:
        """Operator stop: de-energize, stop polling, and mark ABORTED."""
        adapter = self._adapter_factory(station.controller_type)
        await adapter.turn_off(station, outlet)
        self._collector.stop(run_id)
        self.monitor.stop_monitoring(run_id)
        return await self.update_status(run_id, RunStatus.ABORTED)

    async def finish_run(
        self,
        run_id: str,
        station: Station,
        outlet: Outlet,
        profile: Profile,
        checklist_values: dict[str, Any] | None = None,
    ) -> TestRun:
        """Normal completion: de-energize, score, and mark COMPLETED/FAILED.

        A run that reached a terminal status meanwhile (for example aborted
        by the safety monitor) is returned unchanged.
        """
        adapter = self._adapter_factory(station.controller_type)
        await adapter.turn_off(station, outlet)
        count = self._collector.stop(run_id)
        self.monitor.stop_monitoring(run_id)

        run = await self.require_run(run_id)
        if run.status.is_terminal:
            return run

        readings = await self._store.get_readings_ascending(run_id)
        result, score = compute_result(run, readings, profile, checklist_values)
        await self._store.update_run(
            run_id,
            result=result,
            score=score,
            checklist_values=checklist_values,
            updated_at=self._now(),
        )
        logger.info(
            "Run %s finished: result=%s score=%d (%d readings this session)",
            run_id,
            result,
            score,
            count,
        )
        final = RunStatus.FAILED if result == RunResult.FAIL else RunStatus.COMPLETED
        return await self.update_status(run_id, final)


# ---------------------------------------------------------------------------
# Result computation
# ---------------------------------------------------------------------------


def compute_result(
    run: TestRun,
    readings: list[Reading],
    profile: Profile,
    checklist_values: dict[str, Any] | None = None,
) -> tuple[RunResult, int]:
    """Grade a run from its readings (oldest first), anomalies and checklist.

    Returns:
        ``(result, score)`` with score in 0..100.
    """
    thresholds = profile.thresholds
    if not readings:
        return RunResult.INCOMPLETE, 0

    duration_s = (
        (readings[-1].ts - readings[0].ts).total_seconds() if len(readings) > 1 else 0.0
    )
    if duration_s < thresholds.min_run_seconds:
        return RunResult.INCOMPLETE, 20

    values = checklist_values or {}
    missing = [
        item.id
        for item in profile.operator_checklist
        if item.required and values.get(item.id) in (None, "")
    ]
    if missing:
        return RunResult.INCOMPLETE, 20

    has_anomalies = bool(run.anomalies)
    watts = [r.watts for r in readings if r.watts is not None]
    if not watts:
        return (RunResult.ANOMALY, 50) if has_anomalies else (RunResult.PASS, 70)

    if max(watts) > thresholds.max_peak_watts:
        return RunResult.FAIL, 10

    out_of_range = sum(
        1
        for w in watts
        if w < thresholds.min_stable_watts or w > thresholds.max_stable_watts
    )
    # Half-point penalties round up, not to even.
    penalty = math.floor(out_of_range / len(watts) * 40 + 0.5)
    score = 100 - penalty - 10 * len(run.anomalies)
    score = max(0, min(100, score))

    if score < 50:
        return RunResult.FAIL, score
    if has_anomalies:
        return RunResult.ANOMALY, score
    return RunResult.PASS, score


def _check_outlet_belongs(station: Station, outlet: Outlet) -> None:
    if outlet.station_id != station.id:
        raise ConfigurationError(
            f"Outlet {outlet.id} belongs to station {outlet.station_id}, "
            f"not {station.id}"
        )


def _check_run_target(
    run: TestRun, station: Station, outlet: Outlet, profile: Profile
) -> None:
    _check_outlet_belongs(station, outlet)
    if (run.station_id, run.outlet_id, run.profile_id) != (
        station.id,
        outlet.id,
        profile.id,
    ):
        raise ConfigurationError(
            f"Run {run.id} was created for station/outlet/profile "
            f"{run.station_id}/{run.outlet_id}/{run.profile_id}"
        )
