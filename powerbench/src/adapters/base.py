"""
Power controller adapter contract.

Every controller variant implements the same capability set:

- ``turn_on``: energize an outlet. Failures raise :class:`AdapterError` and
  the caller decides whether the run is aborted.
- ``turn_off``: de-energize an outlet. Never raises; failures are logged
  inside the adapter because it runs on the emergency-shutdown path.
- ``get_instant_readings``: point sample, bounded by a short timeout. Raises
  :class:`AdapterError` on timeout/error (a transient read failure).
- ``health_check``: never raises; any failure is reported as ``ok=False``.

CHANGELOG:
- 2026-10-05: Add check_config so addresses are validated before energizing (STORY-005)
- 2026-10-03: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from powerbench.src.errors import ConfigurationError

if TYPE_CHECKING:
    from powerbench.src.config import BenchSettings
    from powerbench.src.models import (
        HealthCheckResult,
        InstantReadings,
        Outlet,
        Station,
    )

DEFAULT_READ_TIMEOUT_S: float = 3.0
"""Timeout for a single metering request."""

DEFAULT_HEALTH_TIMEOUT_S: float = 5.0
"""Timeout for health checks and turn-off commands."""


class PowerControllerAdapter(ABC):
    """Protocol-specific implementation of the controller capability set.

    Args:
        read_timeout_s: Timeout applied to metering requests.
        health_timeout_s: Timeout applied to health checks and switching.
    """

    name: str = "abstract"

    def __init__(
        self,
        *,
        read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
        health_timeout_s: float = DEFAULT_HEALTH_TIMEOUT_S,
    ) -> None:
        self._read_timeout_s = read_timeout_s
        self._health_timeout_s = health_timeout_s

    @classmethod
    def from_settings(cls, settings: BenchSettings) -> PowerControllerAdapter:
        """Build the adapter from bench settings."""
        return cls(
            read_timeout_s=settings.read_timeout_s,
            health_timeout_s=settings.health_timeout_s,
        )

    def check_config(self, station: Station, outlet: Outlet) -> None:
        """Raise :class:`ConfigurationError` if the station cannot be driven.

        The default requires a controller address. Manual stations override
        this to accept anything.
        """
        if not (station.controller_base_url or "").strip():
            raise ConfigurationError(
                f"{self.name} adapter requires controller_base_url "
                f"(station {station.id})"
            )

    @abstractmethod
    async def turn_on(self, station: Station, outlet: Outlet) -> None:
        """Energize the outlet."""

    @abstractmethod
    async def turn_off(self, station: Station, outlet: Outlet) -> None:
        """De-energize the outlet. Must never raise."""

    @abstractmethod
    async def get_instant_readings(
        self, station: Station, outlet: Outlet
    ) -> InstantReadings:
        """Read instantaneous power metrics from the outlet."""

    @abstractmethod
    async def health_check(self, station: Station) -> HealthCheckResult:
        """Check that the controller is reachable. Must never raise."""


def number_or_none(value: object) -> float | None:
    """Return *value* as a float when it is a real number, else ``None``."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)
