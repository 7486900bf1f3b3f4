"""
Readings collector: polls controller adapters and persists power samples.

Owns one periodic poll per active test run. Each tick calls the run's
adapter ``get_instant_readings`` and stores a :class:`Reading` with a fresh
timestamp. A failed tick is logged and skipped; there is no retry within the
tick because the next scheduled tick is the retry.

Per run id the collector is either idle or collecting. Starting a second
session for the same run id is a configuration error and leaves the first
session running. ``stop`` is idempotent.

A tick whose run was stopped while its adapter call was in flight discards
the result instead of persisting it.

CHANGELOG:
- 2026-10-16: Track the last timestamp per session instead of per run id (STORY-013)
- 2026-10-07: Discard in-flight results for stopped runs (STORY-007)
- 2026-10-07: Initial creation (STORY-007)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from powerbench.src.adapters import get_adapter
from powerbench.src.errors import ConfigurationError
from powerbench.src.models import InstantReadings, Reading
from powerbench.src.scheduler import PeriodicTask

if TYPE_CHECKING:
    from powerbench.src.adapters import PowerControllerAdapter
    from powerbench.src.models import Outlet, Station
    from powerbench.src.store import BenchStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS: int = 1000
"""Default cadence of the per-run poll."""

_TIMEOUT_GRACE_S: float = 1.0
"""Slack added on top of the adapter's own read timeout."""


@dataclass
class _Collection:
    run_id: str
    station: Station
    outlet: Outlet
    adapter: PowerControllerAdapter
    task: PeriodicTask | None = None
    reading_count: int = 0
    last_ts: datetime | None = None


class ReadingsCollector:
    """Registry of per-run polling sessions.

    Args:
        store: Persistence for readings.
        adapter_factory: Resolves a controller-type string to an adapter.
        interval_ms: Default poll cadence for new sessions.
        read_timeout_s: Adapter read timeout; ticks are bounded slightly
            above it so a hung adapter cannot stall a session.
        now: Clock returning timezone-aware datetimes for reading timestamps.
    """

    def __init__(
        self,
        store: BenchStore,
        *,
        adapter_factory: Callable[[str], PowerControllerAdapter] = get_adapter,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        read_timeout_s: float = 3.0,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._adapter_factory = adapter_factory
        self._interval_ms = interval_ms
        self._read_timeout_s = read_timeout_s
        self._now = now or (lambda: datetime.now(tz=UTC))
        self._active: dict[str, _Collection] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        run_id: str,
        station: Station,
        outlet: Outlet,
        interval_ms: int | None = None,
    ) -> None:
        """Begin polling *outlet* for *run_id*.

        Must be called from a running event loop.

        Raises:
            ConfigurationError: If a session for *run_id* is already active,
                the controller type is unknown, or the interval is not
                positive.
        """
        if run_id in self._active:
            raise ConfigurationError(f"Already collecting for test run: {run_id}")
        interval = self._interval_ms if interval_ms is None else interval_ms
        if interval <= 0:
            raise ConfigurationError(f"Poll interval must be > 0 (got {interval})")

        adapter = self._adapter_factory(station.controller_type)
        collection = _Collection(
            run_id=run_id, station=station, outlet=outlet, adapter=adapter
        )
        collection.task = PeriodicTask(
            f"collect:{run_id}",
            interval / 1000,
            lambda: self._poll_and_record(collection),
        )
        self._active[run_id] = collection
        collection.task.start()
        logger.info(
            "Started collecting for run %s (outlet=%s, adapter=%s, interval=%dms)",
            run_id,
            outlet.id,
            adapter.name,
            interval,
        )

    def stop(self, run_id: str) -> int:
        """Stop the session for *run_id*.

        Returns:
            Number of readings collected in the stopped session, or 0 when
            nothing was active.
        """
        collection = self._active.pop(run_id, None)
        if collection is None:
            return 0
        if collection.task is not None:
            collection.task.cancel()
        logger.info(
            "Stopped collecting for run %s (%d readings)",
            run_id,
            collection.reading_count,
        )
        return collection.reading_count

    def stop_all(self) -> int:
        """Stop every active session (process shutdown).

        Returns:
            Number of sessions stopped.
        """
        run_ids = list(self._active)
        for run_id in run_ids:
            self.stop(run_id)
        return len(run_ids)

    def is_collecting(self, run_id: str) -> bool:
        return run_id in self._active

    def active_count(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_readings(
        self, run_id: str, limit: int | None = None
    ) -> list[Reading]:
        """Return readings for *run_id*, most recent first."""
        return await self._store.get_readings(run_id, limit)

    async def get_latest_reading(self, run_id: str) -> Reading | None:
        readings = await self._store.get_readings(run_id, 1)
        return readings[0] if readings else None

    async def record_reading(
        self, run_id: str, readings: InstantReadings
    ) -> Reading:
        """Persist a sample from a source that cannot be polled.

        Used for manual stations and external instruments.
        """
        return await self._persist(run_id, readings, self._active.get(run_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _poll_and_record(self, collection: _Collection) -> None:
        run_id = collection.run_id
        try:
            readings = await asyncio.wait_for(
                collection.adapter.get_instant_readings(
                    collection.station, collection.outlet
                ),
                timeout=self._read_timeout_s + _TIMEOUT_GRACE_S,
            )
        except Exception as exc:
            logger.warning("Poll error for run %s: %s", run_id, exc)
            return

        if self._active.get(run_id) is not collection:
            logger.debug("Discarding reading for stopped run %s", run_id)
            return

        await self._persist(run_id, readings, collection)
        collection.reading_count += 1

    async def _persist(
        self,
        run_id: str,
        readings: InstantReadings,
        collection: _Collection | None,
    ) -> Reading:
        ts = self._now()
        last = collection.last_ts if collection is not None else None
        if last is None:
            stored = await self._store.get_readings(run_id, 1)
            last = stored[0].ts if stored else None
        if last is not None and ts <= last:
            # Keep per-run timestamps strictly increasing across clock steps.
            ts = last + timedelta(microseconds=1)
        if collection is not None:
            collection.last_ts = ts

        reading = Reading(
            id=str(uuid.uuid4()),
            test_run_id=run_id,
            ts=ts,
            watts=readings.watts,
            volts=readings.volts,
            amps=readings.amps,
            temp_c=readings.temp_c,
            pressure=readings.pressure,
            raw=readings.raw,
        )
        await self._store.insert_reading(reading)
        return reading
