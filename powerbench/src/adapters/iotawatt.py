"""
IoTaWatt HTTP adapter (monitor-only, CT clamp metering).

IoTaWatt exposes a query API for real-time values:
    GET /query?select=[<channel>.Watts,<channel>.Volts,<channel>.Amps]
which returns a JSON array in select order.

IoTaWatt cannot switch power. ``turn_on``/``turn_off`` log a warning and do
nothing; such stations must be paired with a separate relay.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging

import httpx

from powerbench.src.adapters.base import PowerControllerAdapter, number_or_none
from powerbench.src.errors import AdapterError, ConfigurationError
from powerbench.src.models import HealthCheckResult, InstantReadings, Outlet, Station

logger = logging.getLogger(__name__)


class IoTaWattAdapter(PowerControllerAdapter):
    """IoTaWatt energy monitor. Metering is real; switching is a no-op."""

    name = "IoTaWatt (HTTP)"

    async def turn_on(self, station: Station, outlet: Outlet) -> None:
        logger.warning(
            "IoTaWatt turn_on is a no-op for outlet %s: monitor-only controller",
            outlet.id,
        )

    async def turn_off(self, station: Station, outlet: Outlet) -> None:
        logger.warning(
            "IoTaWatt turn_off is a no-op for outlet %s: monitor-only controller",
            outlet.id,
        )

    async def get_instant_readings(
        self, station: Station, outlet: Outlet
    ) -> InstantReadings:
        ch = outlet.controller_channel
        select = f"[{ch}.Watts,{ch}.Volts,{ch}.Amps]"
        try:
            async with httpx.AsyncClient(timeout=self._read_timeout_s) as client:
                response = await client.get(
                    f"{_base_url(station)}/query", params={"select": select}
                )
        except httpx.HTTPError as exc:
            raise AdapterError(f"IoTaWatt query failed: {exc}") from exc

        if response.status_code != 200:
            raise AdapterError(f"IoTaWatt query failed: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise AdapterError(f"IoTaWatt returned invalid JSON: {exc}") from exc
        if not isinstance(data, list):
            raise AdapterError("IoTaWatt query returned a non-array payload")

        values = list(data) + [None] * (3 - len(data))
        return InstantReadings(
            watts=number_or_none(values[0]),
            volts=number_or_none(values[1]),
            amps=number_or_none(values[2]),
            raw={"channel": ch, "response": data},
        )

    async def health_check(self, station: Station) -> HealthCheckResult:
        try:
            async with httpx.AsyncClient(timeout=self._health_timeout_s) as client:
                response = await client.get(f"{_base_url(station)}/status")
            if response.status_code != 200:
                return HealthCheckResult(
                    ok=False, details={"error": f"HTTP {response.status_code}"}
                )
            data = response.json()
            return HealthCheckResult(
                ok=True, details=data if isinstance(data, dict) else {"status": data}
            )
        except Exception as exc:
            return HealthCheckResult(ok=False, details={"error": str(exc)})


def _base_url(station: Station) -> str:
    base = (station.controller_base_url or "").strip().rstrip("/")
    if not base:
        raise ConfigurationError(
            "IoTaWatt adapter requires controller_base_url (e.g. http://192.168.1.101)"
        )
    return base
