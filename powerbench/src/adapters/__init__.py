"""
Power controller adapters and the controller-type factory.

``get_adapter`` resolves a controller-type string to one adapter instance.
An unknown type is a :class:`~powerbench.src.errors.ConfigurationError`
raised at construction time, never deferred to first use.

CHANGELOG:
- 2026-10-06: Register SNMP PDU adapter (STORY-006)
- 2026-10-05: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from powerbench.src.adapters.base import PowerControllerAdapter
from powerbench.src.adapters.iotawatt import IoTaWattAdapter
from powerbench.src.adapters.manual import ManualAdapter
from powerbench.src.adapters.shelly import ShellyAdapter
from powerbench.src.adapters.snmp_pdu import SnmpPduAdapter
from powerbench.src.errors import ConfigurationError
from powerbench.src.models import ControllerType

if TYPE_CHECKING:
    from powerbench.src.config import BenchSettings

_ADAPTER_CLASSES: dict[ControllerType, type[PowerControllerAdapter]] = {
    ControllerType.SHELLY_GEN2_HTTP: ShellyAdapter,
    ControllerType.IOTAWATT_HTTP: IoTaWattAdapter,
    ControllerType.SNMP_PDU: SnmpPduAdapter,
    ControllerType.MANUAL: ManualAdapter,
}


def get_adapter(
    controller_type: str, settings: BenchSettings | None = None
) -> PowerControllerAdapter:
    """Build the adapter for *controller_type*.

    Args:
        controller_type: A :class:`ControllerType` value.
        settings: Optional bench settings for timeouts and SNMP communities.
            Adapter defaults are used when omitted.

    Raises:
        ConfigurationError: If the controller type is not recognized.
    """
    try:
        ctype = ControllerType(controller_type)
    except ValueError:
        raise ConfigurationError(
            f"Unknown controller type: {controller_type!r}"
        ) from None
    adapter_cls = _ADAPTER_CLASSES[ctype]
    if settings is None:
        return adapter_cls()
    return adapter_cls.from_settings(settings)


__all__ = [
    "IoTaWattAdapter",
    "ManualAdapter",
    "PowerControllerAdapter",
    "ShellyAdapter",
    "SnmpPduAdapter",
    "get_adapter",
]
