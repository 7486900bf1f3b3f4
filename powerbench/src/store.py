"""
Async SQLite persistence for test runs and power readings.

Backs the test run manager and the readings collector. Readings are
append-only and returned most-recent-first; anomalies are appended to a
JSON array on the run row and never rewritten.

Operations:
- insert_run / get_run / list_runs / update_run / append_anomaly
- active_run_for_outlet(outlet_id): non-terminal run claiming an outlet.
- insert_reading / get_readings(run_id, limit) / get_readings_ascending

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-09: Add checklist_values and score columns (STORY-009)
- 2026-10-04: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from powerbench.src.models import (
    TERMINAL_STATUSES,
    Anomaly,
    Reading,
    RunStatus,
    TestRun,
)

_CREATE_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS test_runs (
    id TEXT PRIMARY KEY,
    qlid TEXT NOT NULL,
    station_id TEXT NOT NULL,
    outlet_id TEXT NOT NULL,
    profile_id TEXT NOT NULL,
    operator_id TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    result TEXT,
    score INTEGER,
    anomalies TEXT NOT NULL DEFAULT '[]',
    checklist_values TEXT,
    notes TEXT,
    started_at TEXT,
    ended_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_test_runs_status ON test_runs(status);
CREATE INDEX IF NOT EXISTS idx_test_runs_outlet ON test_runs(outlet_id);
CREATE TABLE IF NOT EXISTS test_readings (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    test_run_id TEXT NOT NULL REFERENCES test_runs(id) ON DELETE CASCADE,
    ts TEXT NOT NULL,
    watts REAL,
    volts REAL,
    amps REAL,
    temp_c REAL,
    pressure REAL,
    raw TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_test_readings_run_ts ON test_readings(test_run_id, ts);
"""

_INSERT_RUN_SQL = """\
INSERT INTO test_runs (
    id, qlid, station_id, outlet_id, profile_id, operator_id,
    status, anomalies, created_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_INSERT_READING_SQL = """\
INSERT INTO test_readings (
    id, test_run_id, ts, watts, volts, amps, temp_c, pressure, raw
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
"""

_READINGS_DESC_SQL = """\
SELECT id, test_run_id, ts, watts, volts, amps, temp_c, pressure, raw
FROM test_readings
WHERE test_run_id = ?
ORDER BY ts DESC, seq DESC
"""

_READINGS_ASC_SQL = """\
SELECT id, test_run_id, ts, watts, volts, amps, temp_c, pressure, raw
FROM test_readings
WHERE test_run_id = ?
ORDER BY ts ASC, seq ASC;
"""

_RUN_COLUMNS = (
    "id, qlid, station_id, outlet_id, profile_id, operator_id, status, result, "
    "score, anomalies, checklist_values, notes, started_at, ended_at, "
    "created_at, updated_at"
)

# Columns update_run may touch. Anomalies go through append_anomaly only.
_UPDATABLE_RUN_FIELDS = frozenset(
    {
        "status",
        "result",
        "score",
        "checklist_values",
        "notes",
        "started_at",
        "ended_at",
        "updated_at",
    }
)


class BenchStore:
    """Async SQLite store for test runs and readings.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with BenchStore(path="bench.db") as store:
            await store.insert_run(run)
            latest = await store.get_readings(run.id, limit=1)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None
        # Serializes read-modify-write on a run's anomaly list.
        self._anomaly_lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute("PRAGMA foreign_keys=ON;")
        await self._db.executescript(_CREATE_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> BenchStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        return self._db

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def insert_run(self, run: TestRun) -> None:
        await self.db.execute(
            _INSERT_RUN_SQL,
            (
                run.id,
                run.qlid,
                run.station_id,
                run.outlet_id,
                run.profile_id,
                run.operator_id,
                run.status.value,
                json.dumps([a.model_dump(mode="json") for a in run.anomalies]),
                run.created_at.isoformat(),
            ),
        )
        await self.db.commit()

    async def get_run(self, run_id: str) -> TestRun | None:
        cursor = await self.db.execute(
            f"SELECT {_RUN_COLUMNS} FROM test_runs WHERE id = ?;",  # noqa: S608
            (run_id,),
        )
        row = await cursor.fetchone()
        return _row_to_run(row) if row is not None else None

    async def list_runs(
        self,
        *,
        status: RunStatus | None = None,
        station_id: str | None = None,
        limit: int = 100,
    ) -> list[TestRun]:
        """Return runs newest first, optionally filtered by status/station."""
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if station_id is not None:
            conditions.append("station_id = ?")
            params.append(station_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        cursor = await self.db.execute(
            f"SELECT {_RUN_COLUMNS} FROM test_runs {where} "  # noqa: S608
            "ORDER BY created_at DESC LIMIT ?;",
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_run(row) for row in rows]

    async def update_run(self, run_id: str, **fields: Any) -> None:
        """Update scalar columns of a run.

        Datetimes are stored as ISO strings, dicts as JSON, enums by value.

        Raises:
            ValueError: If a field is not an updatable column.
        """
        unknown = set(fields) - _UPDATABLE_RUN_FIELDS
        if unknown:
            raise ValueError(f"Cannot update run fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = [_to_column(value) for value in fields.values()]
        params.append(run_id)
        await self.db.execute(
            f"UPDATE test_runs SET {assignments} WHERE id = ?;",  # noqa: S608
            params,
        )
        await self.db.commit()

    async def append_anomaly(
        self, run_id: str, anomaly: Anomaly, updated_at: datetime
    ) -> bool:
        """Append one anomaly to a run's log.

        Returns:
            ``False`` if the run does not exist, ``True`` otherwise.
        """
        async with self._anomaly_lock:
            cursor = await self.db.execute(
                "SELECT anomalies FROM test_runs WHERE id = ?;", (run_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return False
            anomalies = json.loads(row[0] or "[]")
            anomalies.append(anomaly.model_dump(mode="json"))
            await self.db.execute(
                "UPDATE test_runs SET anomalies = ?, updated_at = ? WHERE id = ?;",
                (json.dumps(anomalies), updated_at.isoformat(), run_id),
            )
            await self.db.commit()
            return True

    async def active_run_for_outlet(self, outlet_id: str) -> TestRun | None:
        """Return a non-terminal run claiming *outlet_id*, if any."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ",".join("?" for _ in terminal)
        cursor = await self.db.execute(
            f"SELECT {_RUN_COLUMNS} FROM test_runs "  # noqa: S608
            f"WHERE outlet_id = ? AND status NOT IN ({placeholders}) "
            "ORDER BY created_at ASC LIMIT 1;",
            [outlet_id, *terminal],
        )
        row = await cursor.fetchone()
        return _row_to_run(row) if row is not None else None

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    async def insert_reading(self, reading: Reading) -> None:
        await self.db.execute(
            _INSERT_READING_SQL,
            (
                reading.id,
                reading.test_run_id,
                reading.ts.isoformat(),
                reading.watts,
                reading.volts,
                reading.amps,
                reading.temp_c,
                reading.pressure,
                json.dumps(reading.raw, default=str),
            ),
        )
        await self.db.commit()

    async def get_readings(
        self, run_id: str, limit: int | None = None
    ) -> list[Reading]:
        """Return readings for a run, most recent first.

        Args:
            run_id: Test run id.
            limit: Maximum rows to return; ``None`` returns all.
        """
        if limit is not None and limit < 1:
            return []
        if limit is None:
            cursor = await self.db.execute(_READINGS_DESC_SQL + ";", (run_id,))
        else:
            cursor = await self.db.execute(
                _READINGS_DESC_SQL + " LIMIT ?;", (run_id, limit)
            )
        rows = await cursor.fetchall()
        return [_row_to_reading(row) for row in rows]

    async def get_readings_ascending(self, run_id: str) -> list[Reading]:
        cursor = await self.db.execute(_READINGS_ASC_SQL, (run_id,))
        rows = await cursor.fetchall()
        return [_row_to_reading(row) for row in rows]


# ---------------------------------------------------------------------------
# Row converters
# ---------------------------------------------------------------------------


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return json.dumps(value, default=str)
    if hasattr(value, "value"):
        return value.value
    return value


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_run(row: Any) -> TestRun:
    (
        run_id,
        qlid,
        station_id,
        outlet_id,
        profile_id,
        operator_id,
        status,
        result,
        score,
        anomalies,
        checklist_values,
        notes,
        started_at,
        ended_at,
        created_at,
        updated_at,
    ) = row
    return TestRun(
        id=run_id,
        qlid=qlid,
        station_id=station_id,
        outlet_id=outlet_id,
        profile_id=profile_id,
        operator_id=operator_id,
        status=status,
        result=result,
        score=score,
        anomalies=json.loads(anomalies or "[]"),
        checklist_values=json.loads(checklist_values) if checklist_values else None,
        notes=notes,
        started_at=_parse_ts(started_at),
        ended_at=_parse_ts(ended_at),
        created_at=datetime.fromisoformat(created_at),
        updated_at=_parse_ts(updated_at),
    )


def _row_to_reading(row: Any) -> Reading:
    reading_id, run_id, ts, watts, volts, amps, temp_c, pressure, raw = row
    try:
        raw_obj = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        raw_obj = {}
    return Reading(
        id=reading_id,
        test_run_id=run_id,
        ts=datetime.fromisoformat(ts),
        watts=watts,
        volts=volts,
        amps=amps,
        temp_c=temp_c,
        pressure=pressure,
        raw=raw_obj if isinstance(raw_obj, dict) else {"value": raw_obj},
    )
