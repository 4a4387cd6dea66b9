# gateway/sensors/manager.py
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple, TypeVar

from .interface import Central, DeviceDisconnected, DeviceDiscovered
from ..registry import DeviceRegistry
from ..sensor import DomainSensor, TimestampedReading
from ..state import SensorStore, StorageBusy, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_worker: Optional[threading.Thread] = None
_scheduler: Optional["SensorScheduler"] = None
_stop_event = threading.Event()


class SchedulerStopped(Exception):
    """Raised when a storage retry is abandoned because the scheduler is stopping."""


class SensorScheduler:
    """
    Single cooperative loop driving the registry.

    Each tick handles at most one lifecycle event, then inspects one pending
    peripheral if the inspection interval elapsed, then polls every active
    sensor if the poll interval elapsed and writes the readings to storage.
    """

    def __init__(
        self,
        central: Central,
        registry: DeviceRegistry,
        store: SensorStore,
        event_timeout_s: float = 1.0,
        inspect_interval_s: float = 1.0,
        poll_interval_s: float = 60.0,
        storage_backoff_s: float = 1.0,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.central = central
        self.registry = registry
        self.store = store
        self.event_timeout_s = event_timeout_s
        self.inspect_interval_s = inspect_interval_s
        self.poll_interval_s = poll_interval_s
        self.storage_backoff_s = storage_backoff_s
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        now = clock()
        self._last_inspect = now
        self._last_poll = now

    # --- loop --------------------------------------------------------------

    def tick(self) -> None:
        self._handle_event()

        now = self._clock()
        if now - self._last_inspect >= self.inspect_interval_s:
            self._last_inspect = now
            sensor = self.registry.pop_and_inspect()
            if sensor is not None:
                self._register(sensor)

        now = self._clock()
        if now - self._last_poll >= self.poll_interval_s:
            self._last_poll = now
            self.store_readings(self.registry.poll_all())

    def run(self) -> None:
        logger.info(
            f"Sensor scheduler started (inspect every {self.inspect_interval_s}s, "
            f"poll every {self.poll_interval_s}s)"
        )
        while not self.stop_event.is_set():
            try:
                self.tick()
            except SchedulerStopped:
                break
            except Exception:
                logger.exception("Sensor scheduler tick failed")
        logger.info("Sensor scheduler stopped")

    def _handle_event(self) -> None:
        event = self.central.next_event(self.event_timeout_s)
        if isinstance(event, DeviceDiscovered):
            logger.info(f"{event.address} discovered")
            peripheral = self.central.peripheral(event.address)
            if peripheral is None:
                logger.warning(f"Failed to get the peripheral {event.address}")
                return
            self.registry.on_discovered(peripheral)
        elif isinstance(event, DeviceDisconnected):
            logger.info(f"{event.address} disconnected")
            self.registry.on_disconnect(event.address)

    # --- storage -----------------------------------------------------------

    def _retry_busy(self, what: str, op: Callable[[], T]) -> T:
        """Run op, retrying after a fixed backoff for as long as storage is busy."""
        while True:
            try:
                return op()
            except StorageBusy:
                logger.warning(f"Storage busy during {what}, retrying in {self.storage_backoff_s}s")
                if self.stop_event.wait(self.storage_backoff_s):
                    raise SchedulerStopped(what)

    def _register(self, sensor: DomainSensor) -> None:
        try:
            self._retry_busy(
                f"register {sensor.address}",
                lambda: self.store.create_sensor_if_not_exists(sensor),
            )
        except StorageError:
            logger.exception(f"Could not register sensor {sensor.address}")

    def store_readings(
        self, results: List[Tuple[DomainSensor, List[TimestampedReading]]]
    ) -> int:
        """
        Persist the readings of one poll sweep. Returns the number stored.

        Busy storage is retried; any other storage error abandons the rest of
        the sweep.
        """
        stored = 0
        try:
            for sensor, readings in results:
                self._retry_busy(
                    f"register {sensor.address}",
                    lambda: self.store.create_sensor_if_not_exists(sensor),
                )
                handle = self._retry_busy(
                    f"lookup {sensor.address}",
                    lambda: self.store.get_sensor_handle(sensor),
                )
                for r in readings:
                    self._retry_busy(
                        f"insert {r.reading.kind.value} for {sensor.address}",
                        lambda: self.store.add_reading(handle, r.timestamp, r.reading),
                    )
                    stored += 1
        except StorageError:
            logger.exception("Storing readings failed, dropping the rest of this poll cycle")
        return stored


def start_sensor_workers(
    central: Central,
    registry: DeviceRegistry,
    store: SensorStore,
    **scheduler_kwargs,
) -> SensorScheduler:
    """
    Called once at app startup.
    Starts scanning and runs the scheduler on a dedicated daemon thread.
    """
    global _worker, _scheduler
    _stop_event.clear()

    central.start_scan()
    _scheduler = SensorScheduler(central, registry, store, stop_event=_stop_event, **scheduler_kwargs)
    _worker = threading.Thread(target=_scheduler.run, name="sensor-scheduler", daemon=True)
    _worker.start()
    return _scheduler


def stop_sensor_workers(join_timeout_s: float = 15.0) -> None:
    """Called on shutdown: stop the loop, stop scanning and drop all sessions."""
    global _worker, _scheduler
    _stop_event.set()
    if _worker is not None:
        # an in-flight handshake or poll wait is allowed to finish
        _worker.join(timeout=join_timeout_s)
        if _worker.is_alive():
            # the loop still owns the sessions; it exits on its own once the tick returns
            logger.warning("Sensor scheduler did not stop in time, skipping radio teardown")
            _worker = None
            _scheduler = None
            return
    if _scheduler is not None:
        _scheduler.registry.close()
        try:
            _scheduler.central.close()
        except Exception as e:
            logger.error(f"Failed to shut down the radio: {e}")
    _worker = None
    _scheduler = None
