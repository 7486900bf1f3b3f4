"""
Shared test fixtures for test-bench tests.

Provides environment isolation for BenchSettings and ready-made station,
outlet, and profile models. All BENCH_ env vars are cleaned before each test.

CHANGELOG:
- 2026-10-09: Add profile fixture with operator checklist (STORY-009)
- 2026-10-02: Initial creation (STORY-001)

TODO:
- None
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta

import pytest
from powerbench.src.models import (
    ChecklistItem,
    ControllerType,
    Outlet,
    Profile,
    SafetyFlags,
    Station,
    Thresholds,
)


@pytest.fixture(autouse=True)
def _clean_bench_env(monkeypatch: pytest.MonkeyPatch, tmp_path: str) -> None:
    """Remove all BENCH_ env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings, and so the default bench.db lands there.
    """
    for var in list(os.environ):
        if var.startswith("BENCH_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def station() -> Station:
    """A Shelly station with GFCI present and safety acknowledged."""
    return Station(
        id="station-1",
        name="Bench A",
        controller_type=ControllerType.SHELLY_GEN2_HTTP,
        controller_base_url="http://192.168.1.100",
        safety_flags=SafetyFlags(
            gfci_present=True,
            surge_protection=True,
            acknowledged_by="op-7",
            acknowledged_at=datetime(2026, 10, 1, 8, 0, tzinfo=UTC),
        ),
    )


@pytest.fixture()
def outlet() -> Outlet:
    return Outlet(
        id="outlet-1",
        station_id="station-1",
        label="Left socket",
        controller_channel="0",
        max_amps=15.0,
    )


@pytest.fixture()
def profile() -> Profile:
    """Small-appliance profile: 1500W peak, 2000W spike shutdown."""
    return Profile(
        id="profile-1",
        category="KETTLE",
        name="Kettles",
        thresholds=Thresholds(
            max_peak_watts=1500,
            min_stable_watts=800,
            max_stable_watts=1400,
            spike_shutdown_watts=2000,
            min_run_seconds=10,
        ),
    )


@pytest.fixture()
def profile_with_checklist(profile: Profile) -> Profile:
    return profile.model_copy(
        update={
            "operator_checklist": [
                ChecklistItem(id="lid_closes", label="Lid closes", type="boolean"),
                ChecklistItem(
                    id="notes", label="Notes", type="text", required=False
                ),
            ]
        }
    )


class FakeClock:
    """Controllable wall clock returning timezone-aware datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()

