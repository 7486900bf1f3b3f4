"""
Manual adapter for stations without automated switching or metering.

Every operation is a human-mediated stub: switching logs an instruction for
the operator, readings are empty (values are entered through the operator
checklist or ``ReadingsCollector.record_reading``), and health is always ok.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging

from powerbench.src.adapters.base import PowerControllerAdapter
from powerbench.src.models import HealthCheckResult, InstantReadings, Outlet, Station

logger = logging.getLogger(__name__)


class ManualAdapter(PowerControllerAdapter):
    name = "Manual"

    def check_config(self, station: Station, outlet: Outlet) -> None:
        # The operator is the controller; there is no address to validate.
        return None

    async def turn_on(self, station: Station, outlet: Outlet) -> None:
        logger.info(
            "OPERATOR: please turn ON outlet '%s' (channel %s) at station %s",
            outlet.label or outlet.id,
            outlet.controller_channel,
            station.id,
        )

    async def turn_off(self, station: Station, outlet: Outlet) -> None:
        logger.info(
            "OPERATOR: please turn OFF outlet '%s' (channel %s) at station %s",
            outlet.label or outlet.id,
            outlet.controller_channel,
            station.id,
        )

    async def get_instant_readings(
        self, station: Station, outlet: Outlet
    ) -> InstantReadings:
        return InstantReadings(
            raw={
                "source": "manual",
                "message": "No automated readings - use operator checklist",
            }
        )

    async def health_check(self, station: Station) -> HealthCheckResult:
        return HealthCheckResult(
            ok=True, details={"message": "Manual station - operator-controlled"}
        )
