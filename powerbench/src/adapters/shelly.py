"""
Shelly Gen2 HTTP adapter (relay with per-channel metering).

Controls Shelly Pro 4PM and similar Gen2 devices through the local RPC API:

- ``Switch.Set`` ``{"id": <channel>, "on": bool}``
- ``Switch.GetStatus`` ``{"id": <channel>}`` -> ``apower``, ``voltage``, ``current``
- ``Shelly.GetStatus`` -> device overview, used for health checks

CHANGELOG:
- 2026-10-05: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from powerbench.src.adapters.base import PowerControllerAdapter, number_or_none
from powerbench.src.errors import AdapterError, ConfigurationError
from powerbench.src.models import HealthCheckResult, InstantReadings, Outlet, Station

logger = logging.getLogger(__name__)


class ShellyAdapter(PowerControllerAdapter):
    """Shelly Gen2 relay controlled over HTTP RPC."""

    name = "Shelly Gen2 (HTTP)"

    def check_config(self, station: Station, outlet: Outlet) -> None:
        super().check_config(station, outlet)
        _channel_id(outlet)

    async def turn_on(self, station: Station, outlet: Outlet) -> None:
        """Switch the channel on.

        Raises:
            AdapterError: On network error, timeout, or a non-2xx response.
        """
        response = await self._rpc(
            station,
            "Switch.Set",
            {"id": _channel_id(outlet), "on": True},
            timeout_s=self._health_timeout_s,
        )
        if not _is_success(response):
            raise AdapterError(
                f"Shelly turn_on failed: HTTP {response.status_code} {response.text}"
            )

    async def turn_off(self, station: Station, outlet: Outlet) -> None:
        try:
            response = await self._rpc(
                station,
                "Switch.Set",
                {"id": _channel_id(outlet), "on": False},
                timeout_s=self._health_timeout_s,
            )
            if not _is_success(response):
                logger.error(
                    "Shelly turn_off non-OK for outlet %s: HTTP %d",
                    outlet.id,
                    response.status_code,
                )
        except Exception:
            logger.error(
                "Shelly turn_off error for outlet %s (best-effort)",
                outlet.id,
                exc_info=True,
            )

    async def get_instant_readings(
        self, station: Station, outlet: Outlet
    ) -> InstantReadings:
        response = await self._rpc(
            station,
            "Switch.GetStatus",
            {"id": _channel_id(outlet)},
            timeout_s=self._read_timeout_s,
        )
        if not _is_success(response):
            raise AdapterError(
                f"Shelly get_instant_readings failed: HTTP {response.status_code}"
            )
        data = _json_object(response)
        return InstantReadings(
            watts=number_or_none(data.get("apower")),
            volts=number_or_none(data.get("voltage")),
            amps=number_or_none(data.get("current")),
            raw=data,
        )

    async def health_check(self, station: Station) -> HealthCheckResult:
        try:
            response = await self._rpc(
                station, "Shelly.GetStatus", {}, timeout_s=self._health_timeout_s
            )
            if not _is_success(response):
                return HealthCheckResult(
                    ok=False, details={"error": f"HTTP {response.status_code}"}
                )
            data = _json_object(response)
            sys_info = data.get("sys") if isinstance(data.get("sys"), dict) else {}
            return HealthCheckResult(
                ok=True,
                details={
                    "firmware": sys_info.get("available_updates"),
                    "uptime": sys_info.get("uptime"),
                    **data,
                },
            )
        except Exception as exc:
            return HealthCheckResult(ok=False, details={"error": str(exc)})

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _rpc(
        self,
        station: Station,
        method: str,
        body: dict[str, Any],
        *,
        timeout_s: float,
    ) -> httpx.Response:
        url = f"{_base_url(station)}/rpc/{method}"
        try:
            async with httpx.AsyncClient(timeout=timeout_s) as client:
                return await client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise AdapterError(f"Shelly {method} request failed: {exc}") from exc


def _base_url(station: Station) -> str:
    base = (station.controller_base_url or "").strip().rstrip("/")
    if not base:
        raise ConfigurationError(
            "Shelly adapter requires controller_base_url (e.g. http://192.168.1.100)"
        )
    return base


def _channel_id(outlet: Outlet) -> int:
    try:
        return int(outlet.controller_channel)
    except ValueError:
        raise ConfigurationError(
            f"Shelly channel must be an integer (got {outlet.controller_channel!r})"
        ) from None


def _is_success(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def _json_object(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as exc:
        raise AdapterError(f"Shelly returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise AdapterError("Shelly returned a non-object JSON payload")
    return data
