from __future__ import annotations
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple

from .sensor import DomainSensor, SensorStatus, TimestampedReading
from .sensors.alpha import (
    RESPONSE_TIMEOUT_S,
    AlphaSensor,
    SendFailed,
    SensorPollError,
    inspect,
)
from .sensors.interface import Peripheral, PeripheralError

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """
    Lifecycle manager for discovered peripherals.

    Holds three collections, each behind its own lock:
      - pending: peripherals waiting for inspection (LIFO)
      - active:  sensor sessions that passed the handshake, by address
      - online:  domain sensors of the active sessions

    Only the scheduler thread mutates the registry. HTTP threads read through
    status() and the snapshot helpers. Whenever active and online change
    together both locks are taken, active first, so a reader never sees a
    session without its online entry or the other way round. The pending lock
    is always taken before the active lock when both are held.
    """

    def __init__(self, response_timeout_s: float = RESPONSE_TIMEOUT_S) -> None:
        self._pending: List[Peripheral] = []
        self._active: Dict[str, AlphaSensor] = {}
        self._online: Set[DomainSensor] = set()
        self._pending_lock = threading.Lock()
        self._active_lock = threading.Lock()
        self._online_lock = threading.Lock()
        self._response_timeout_s = response_timeout_s

    # --- lifecycle events --------------------------------------------------

    def on_discovered(self, peripheral: Peripheral) -> None:
        address = peripheral.address
        with self._pending_lock, self._active_lock:
            known = address in self._active or any(p.address == address for p in self._pending)
            if not known:
                self._pending.append(peripheral)
        if known:
            logger.info(f"{address} is already tracked, ignoring discovery")
            return
        logger.info(f"{address} queued for inspection")

    def on_disconnect(self, address: str) -> None:
        """Forget everything known about address. Calling it again is a no-op."""
        with self._pending_lock:
            before = len(self._pending)
            self._pending = [p for p in self._pending if p.address != address]
            dropped = before - len(self._pending)
        if dropped:
            logger.info(f"{address} lost before inspection")

        session = self._demote(address)
        if session is not None:
            logger.info(f"{address} lost")
            session.close()

    # --- inspection --------------------------------------------------------

    def pop_and_inspect(self) -> Optional[DomainSensor]:
        """
        Inspect the most recently discovered peripheral, if any.

        Returns the domain sensor if the peripheral became an active session.
        """
        with self._pending_lock:
            if not self._pending:
                return None
            peripheral = self._pending.pop()

        with self._active_lock:
            already_active = peripheral.address in self._active
        if already_active:
            # the live session may share this peripheral, so leave it alone
            logger.warning(f"{peripheral.address} already has a session, dropping the duplicate")
            return None

        characteristic = inspect(peripheral)
        if characteristic is None:
            # inspect already disconnected on connect/discovery failure; this
            # covers the missing characteristic case
            self._discard(peripheral)
            return None

        session = AlphaSensor.try_new(peripheral, characteristic, self._response_timeout_s)
        if session is None:
            self._discard(peripheral)
            return None

        sensor = session.domain_sensor
        with self._active_lock, self._online_lock:
            self._active[session.address] = session
            self._online.add(sensor)
        logger.info(f"{session.address} is online ({sensor.name or 'unnamed'})")
        return sensor

    def _discard(self, peripheral: Peripheral) -> None:
        logger.info(f"Discarding {peripheral.address}")
        try:
            peripheral.disconnect()
        except PeripheralError as e:
            logger.warning(f"Could not disconnect from device {peripheral.address}, {e}")
        peripheral.release()

    def _demote(self, address: str) -> Optional[AlphaSensor]:
        """Remove address from the active and online sets together."""
        with self._active_lock, self._online_lock:
            session = self._active.pop(address, None)
            if session is None:
                return None
            sensor = session.domain_sensor
            if sensor in self._online:
                self._online.discard(sensor)
            else:
                logger.warning(f"{address} was active but not tracked online")
        return session

    # --- polling -----------------------------------------------------------

    def poll_all(self) -> List[Tuple[DomainSensor, List[TimestampedReading]]]:
        """
        Poll every active session once.

        Sessions whose command cannot be sent are torn down and their
        peripheral goes back to the pending queue. Any other poll error is
        logged and the session stays active.
        """
        with self._active_lock:
            sessions = list(self._active.values())

        results: List[Tuple[DomainSensor, List[TimestampedReading]]] = []
        for session in sessions:
            try:
                reading = session.poll()
            except SendFailed as e:
                logger.warning(f"Could not communicate with sensor {session.address}: {e}")
                self._demote(session.address)
                session.close()
                with self._pending_lock:
                    self._pending.append(session.peripheral)
                continue
            except SensorPollError as e:
                logger.warning(f"Could not poll sensor data from {session.address}! {e!r}")
                continue

            logger.info(
                f"{session.address}: Temperature: {reading.temperature}C, "
                f"Humidity: {reading.humidity}%"
            )
            results.append((session.domain_sensor, reading.readings()))
        return results

    # --- queries -----------------------------------------------------------

    def status(self, sensor: DomainSensor) -> SensorStatus:
        with self._online_lock:
            online = sensor in self._online
        return SensorStatus.ONLINE if online else SensorStatus.OFFLINE

    def online_sensors(self) -> List[DomainSensor]:
        with self._online_lock:
            return sorted(self._online, key=lambda s: s.address)

    def pending_addresses(self) -> List[str]:
        with self._pending_lock:
            return [p.address for p in self._pending]

    def active_addresses(self) -> List[str]:
        with self._active_lock:
            return sorted(self._active)

    def close(self) -> None:
        """Tear down every active session; used at shutdown."""
        with self._active_lock, self._online_lock:
            sessions = list(self._active.values())
            self._active.clear()
            self._online.clear()
        for session in sessions:
            session.close()
