"""Hardware seams: relay outputs and the Modbus meter bus."""

from .meter_bus import MeterBus
from .relay import MemoryRelay, RelayActuator, SysfsRelay

__all__ = ["MemoryRelay", "MeterBus", "RelayActuator", "SysfsRelay"]
