from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import List, Tuple

from .config import BLE_ADAPTER, MODE, NAME_FILTER, SIM_SENSORS
from .registry import DeviceRegistry
from .sensor import DomainSensor, ReadingKind, SensorStatus, TimestampedReading
from .sensors.interface import Central
from .sensors.simulator import SimulatedCentral
from .state import SensorStore

logger = logging.getLogger(__name__)


def create_central(mode: str = MODE) -> Central:
    if mode == "ble":
        from .sensors.bleak_central import BleakCentral
        return BleakCentral(name_filter=NAME_FILTER, adapter=BLE_ADAPTER)
    if mode != "sim":
        logger.warning(f"Unknown mode {mode!r}, falling back to simulated sensors")
    return SimulatedCentral.with_sensors(SIM_SENSORS)


class GatewayService:
    """Read side of the gateway: stored sensors and readings plus live status."""

    def __init__(self, store: SensorStore, registry: DeviceRegistry, mode: str = MODE) -> None:
        self.store = store
        self.registry = registry
        self.mode = mode

    # read
    def list_sensors(self) -> List[Tuple[int, DomainSensor]]:
        return self.store.list_sensors()

    def sensor_status(self, handle: int) -> SensorStatus:
        sensor = self.store.get_sensor_by_handle(handle)
        return self.registry.status(sensor)

    def readings(self, handle: int) -> List[TimestampedReading]:
        self.store.get_sensor_by_handle(handle)
        return self.store.get_readings(handle)

    def readings_after(self, handle: int, timestamp: datetime) -> List[TimestampedReading]:
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc)
        self.store.get_sensor_by_handle(handle)
        return self.store.get_readings_after(handle, timestamp)

    def latest_reading(self, handle: int, kind: ReadingKind) -> TimestampedReading:
        return self.store.get_latest_reading(handle, kind)

    def gateway_state(self) -> Tuple[List[str], List[str], List[str]]:
        online = [s.address for s in self.registry.online_sensors()]
        return self.registry.pending_addresses(), self.registry.active_addresses(), online
