"""
Pydantic models for test-bench stations, runs, and power readings.

Stations, outlets, and profiles are owned by the surrounding catalog/CRUD
layer; this package only reads them. Runs and readings are persisted by
:class:`~powerbench.src.store.BenchStore`.

CHANGELOG:
- 2026-10-09: Add checklist values and result scoring fields to TestRun (STORY-009)
- 2026-10-02: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ControllerType(StrEnum):
    """Discriminant selecting the controller adapter for a station."""

    SHELLY_GEN2_HTTP = "SHELLY_GEN2_HTTP"
    IOTAWATT_HTTP = "IOTAWATT_HTTP"
    SNMP_PDU = "SNMP_PDU"
    MANUAL = "MANUAL"


class RunStatus(StrEnum):
    """Test run lifecycle: PENDING -> IN_PROGRESS -> terminal."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED})


class RunResult(StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"
    ANOMALY = "ANOMALY"
    INCOMPLETE = "INCOMPLETE"


class AnomalyType(StrEnum):
    SPIKE = "SPIKE"
    OVERCURRENT = "OVERCURRENT"
    HEALTH_FAIL = "HEALTH_FAIL"


# ---------------------------------------------------------------------------
# Bench configuration (read-only here)
# ---------------------------------------------------------------------------


class SafetyFlags(BaseModel):
    """Per-station safety acknowledgements.

    Attributes:
        gfci_present: A ground-fault circuit interrupter protects the station.
        acknowledged_by: Operator id that acknowledged station safety, or
            empty when nobody has.
    """

    gfci_present: bool = False
    surge_protection: bool = False
    acknowledged_by: str = ""
    acknowledged_at: datetime | None = None


class Station(BaseModel):
    """A test station wired to one power controller.

    Attributes:
        id: Station identifier.
        controller_type: Which adapter drives the controller.
        controller_base_url: Controller address. A URL for HTTP controllers,
            an IP/hostname for SNMP PDUs, unused for manual stations.
        safety_flags: GFCI presence and operator acknowledgement.
    """

    id: str
    name: str = ""
    controller_type: ControllerType
    controller_base_url: str | None = None
    safety_flags: SafetyFlags = Field(default_factory=SafetyFlags)


class Outlet(BaseModel):
    """One switchable/metered channel of a station's controller."""

    id: str
    station_id: str
    label: str = ""
    controller_channel: str
    enabled: bool = True
    supports_on_off: bool = True
    supports_power_metering: bool = True
    max_amps: float | None = None


class Thresholds(BaseModel):
    """Power thresholds for a product category."""

    max_peak_watts: float
    min_stable_watts: float
    max_stable_watts: float
    spike_shutdown_watts: float
    min_run_seconds: float


class ChecklistItem(BaseModel):
    id: str
    label: str
    type: Literal["boolean", "number", "text"] = "boolean"
    required: bool = True


class Profile(BaseModel):
    """Per product-category test profile referenced by a run."""

    id: str
    category: str
    name: str = ""
    thresholds: Thresholds
    operator_checklist: list[ChecklistItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Adapter results
# ---------------------------------------------------------------------------


class InstantReadings(BaseModel):
    """A point sample returned by a controller adapter."""

    watts: float | None = None
    volts: float | None = None
    amps: float | None = None
    temp_c: float | None = None
    pressure: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class HealthCheckResult(BaseModel):
    ok: bool
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class Reading(BaseModel):
    """An immutable persisted sample tied to one test run."""

    model_config = {"frozen": True}

    id: str
    test_run_id: str
    ts: datetime
    watts: float | None = None
    volts: float | None = None
    amps: float | None = None
    temp_c: float | None = None
    pressure: float | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class Anomaly(BaseModel):
    """An immutable record of a detected safety violation."""

    model_config = {"frozen": True}

    type: AnomalyType
    message: str
    timestamp: datetime
    value: float | None = None
    threshold: float | None = None


class TestRun(BaseModel):
    """A single automated test of one appliance on one outlet."""

    # Keep pytest from collecting this model as a test class.
    __test__ = False

    id: str
    qlid: str
    station_id: str
    outlet_id: str
    profile_id: str
    operator_id: str | None = None
    status: RunStatus = RunStatus.PENDING
    result: RunResult | None = None
    score: int | None = None
    anomalies: list[Anomaly] = Field(default_factory=list)
    checklist_values: dict[str, Any] | None = None
    notes: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime
    updated_at: datetime | None = None
