"""
SNMP adapter for switched rack PDUs (APC Switched Rack PDU OIDs).

Uses SNMP v2c through pysnmp's asyncio high-level API:

- Outlet control: ``.1.3.6.1.4.1.318.1.1.4.4.2.1.3.<outlet>`` (1=on, 2=off)
- Outlet status:  ``.1.3.6.1.4.1.318.1.1.12.3.5.1.1.4.<outlet>``
- Bank current:   ``.1.3.6.1.4.1.318.1.1.12.2.3.1.1.2.<bank>`` (tenths of amps)
- Health:         ``sysName.0``

Metering is bank-level: the current reported for an outlet is the current
of the whole bank it sits on, which is conservative for overcurrent checks.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any

from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
    set_cmd,
)
from pysnmp.proto.rfc1902 import Integer

from powerbench.src.adapters.base import (
    DEFAULT_HEALTH_TIMEOUT_S,
    DEFAULT_READ_TIMEOUT_S,
    PowerControllerAdapter,
)
from powerbench.src.config import BenchSettings
from powerbench.src.errors import AdapterError, ConfigurationError
from powerbench.src.models import HealthCheckResult, InstantReadings, Outlet, Station

logger = logging.getLogger(__name__)

OID_OUTLET_CONTROL = "1.3.6.1.4.1.318.1.1.4.4.2.1.3"
OID_OUTLET_STATUS = "1.3.6.1.4.1.318.1.1.12.3.5.1.1.4"
OID_BANK_CURRENT = "1.3.6.1.4.1.318.1.1.12.2.3.1.1.2"
OID_SYSNAME = "1.3.6.1.2.1.1.5.0"

OUTLET_CMD_ON = 1
OUTLET_CMD_OFF = 2
DEFAULT_BANK = 1


class SnmpPduAdapter(PowerControllerAdapter):
    """Switched rack PDU controlled over SNMP v2c.

    Args:
        read_community: Community string for GET requests.
        write_community: Community string for SET requests.
        port: UDP port of the PDU's SNMP agent.
    """

    name = "SNMP PDU"

    def __init__(
        self,
        *,
        read_timeout_s: float = DEFAULT_READ_TIMEOUT_S,
        health_timeout_s: float = DEFAULT_HEALTH_TIMEOUT_S,
        read_community: str = "public",
        write_community: str = "private",
        port: int = 161,
    ) -> None:
        super().__init__(read_timeout_s=read_timeout_s, health_timeout_s=health_timeout_s)
        self._read_community = read_community
        self._write_community = write_community
        self._port = port

    @classmethod
    def from_settings(cls, settings: BenchSettings) -> SnmpPduAdapter:
        return cls(
            read_timeout_s=settings.read_timeout_s,
            health_timeout_s=settings.health_timeout_s,
            read_community=settings.snmp_read_community,
            write_community=settings.snmp_write_community,
            port=settings.snmp_port,
        )

    def check_config(self, station: Station, outlet: Outlet) -> None:
        _host(station)
        _outlet_index(outlet)

    async def turn_on(self, station: Station, outlet: Outlet) -> None:
        oid = f"{OID_OUTLET_CONTROL}.{_outlet_index(outlet)}"
        await self._set(_host(station), oid, OUTLET_CMD_ON)

    async def turn_off(self, station: Station, outlet: Outlet) -> None:
        try:
            oid = f"{OID_OUTLET_CONTROL}.{_outlet_index(outlet)}"
            await self._set(_host(station), oid, OUTLET_CMD_OFF)
        except Exception:
            logger.error(
                "SNMP PDU turn_off error for outlet %s (best-effort)",
                outlet.id,
                exc_info=True,
            )

    async def get_instant_readings(
        self, station: Station, outlet: Outlet
    ) -> InstantReadings:
        status_oid = f"{OID_OUTLET_STATUS}.{_outlet_index(outlet)}"
        current_oid = f"{OID_BANK_CURRENT}.{DEFAULT_BANK}"
        values = await self._get(
            _host(station), [status_oid, current_oid], timeout_s=self._read_timeout_s
        )
        outlet_status, bank_current = values
        try:
            amps: float | None = int(bank_current) / 10
        except (TypeError, ValueError):
            amps = None
        return InstantReadings(
            amps=amps,
            raw={
                "outlet_status": str(outlet_status),
                "bank_current": str(bank_current),
            },
        )

    async def health_check(self, station: Station) -> HealthCheckResult:
        try:
            (sys_name,) = await self._get(
                _host(station), [OID_SYSNAME], timeout_s=self._health_timeout_s
            )
            return HealthCheckResult(ok=True, details={"sys_name": str(sys_name)})
        except Exception as exc:
            return HealthCheckResult(ok=False, details={"error": str(exc)})

    # ------------------------------------------------------------------
    # SNMP plumbing
    # ------------------------------------------------------------------

    async def _get(
        self, host: str, oids: list[str], *, timeout_s: float
    ) -> list[Any]:
        """GET *oids* and return their values in request order."""
        engine = SnmpEngine()
        try:
            target = await UdpTransportTarget.create(
                (host, self._port), timeout=timeout_s, retries=0
            )
            error_indication, error_status, error_index, var_binds = await get_cmd(
                engine,
                CommunityData(self._read_community, mpModel=1),
                target,
                ContextData(),
                *(ObjectType(ObjectIdentity(oid)) for oid in oids),
            )
        except Exception as exc:
            raise AdapterError(f"SNMP GET to {host} failed: {exc}") from exc
        finally:
            engine.close_dispatcher()

        _raise_on_error(host, "GET", error_indication, error_status, error_index)
        return [value for _name, value in var_binds]

    async def _set(self, host: str, oid: str, value: int) -> None:
        engine = SnmpEngine()
        try:
            target = await UdpTransportTarget.create(
                (host, self._port), timeout=self._health_timeout_s, retries=0
            )
            error_indication, error_status, error_index, _ = await set_cmd(
                engine,
                CommunityData(self._write_community, mpModel=1),
                target,
                ContextData(),
                ObjectType(ObjectIdentity(oid), Integer(value)),
            )
        except Exception as exc:
            raise AdapterError(f"SNMP SET to {host} failed: {exc}") from exc
        finally:
            engine.close_dispatcher()

        _raise_on_error(host, "SET", error_indication, error_status, error_index)


def _raise_on_error(
    host: str,
    op: str,
    error_indication: Any,
    error_status: Any,
    error_index: Any,
) -> None:
    if error_indication:
        raise AdapterError(f"SNMP {op} to {host} failed: {error_indication}")
    if error_status:
        raise AdapterError(
            f"SNMP {op} to {host} failed: {error_status} at index {error_index}"
        )


def _host(station: Station) -> str:
    """Return the bare PDU host, stripping any URL scheme or trailing slash."""
    address = (station.controller_base_url or "").strip()
    for prefix in ("http://", "https://"):
        if address.lower().startswith(prefix):
            address = address[len(prefix) :]
    address = address.rstrip("/")
    if not address:
        raise ConfigurationError(
            "SNMP PDU adapter requires controller_base_url (IP or hostname)"
        )
    return address


def _outlet_index(outlet: Outlet) -> int:
    try:
        index = int(outlet.controller_channel)
    except ValueError:
        index = 0
    if index < 1:
        raise ConfigurationError(
            f"SNMP PDU outlet index must be a positive integer "
            f"(got {outlet.controller_channel!r})"
        )
    return index
