# gateway/sensors/simulator.py
"""
In-process stand-in for the radio.

SimulatedPeripheral answers the Alpha protocol the way the real firmware does,
optionally from a timer thread to mimic the radio delivering notifications
asynchronously. SimulatedCentral announces a fixed set of them when scanning
starts. Used by "sim" mode and by the tests, so every failure the registry has
to cope with can be switched on per peripheral.
"""
from __future__ import annotations
import logging
import queue
import random
import threading
from typing import Callable, Dict, List, Optional, Union

from .alpha import ALPHA_CHARACTERISTIC_UUID, CMD_HELLO, CMD_READ, HELLO_RESPONSE
from .interface import (
    CentralEvent,
    Characteristic,
    DeviceDisconnected,
    DeviceDiscovered,
    Notification,
    NotificationCallback,
    PeripheralError,
)

logger = logging.getLogger(__name__)

# a reply is either fixed bytes, None (stay silent) or computed per request
Reply = Union[bytes, None, Callable[[], Optional[bytes]]]


class SimulatedPeripheral:
    def __init__(
        self,
        address: str,
        name: Optional[str] = "Weather Alpha",
        characteristics: Optional[List[Characteristic]] = None,
        replies: Optional[Dict[int, Reply]] = None,
        reply_delay_s: float = 0.0,
        fail_connect: bool = False,
        fail_send: bool = False,
    ) -> None:
        self.address = address
        self.name = name
        self.characteristics = (
            characteristics
            if characteristics is not None
            else [Characteristic(uuid=ALPHA_CHARACTERISTIC_UUID, handle=0x25)]
        )
        self.replies: Dict[int, Reply] = {CMD_HELLO: HELLO_RESPONSE, CMD_READ: self._sample}
        if replies:
            self.replies.update(replies)
        self.reply_delay_s = reply_delay_s
        self.fail_connect = fail_connect
        self.fail_send = fail_send

        self.connected = False
        self.connect_count = 0
        self.disconnect_count = 0
        self.release_count = 0
        self.commands: List[bytes] = []
        self._subscriptions: Dict[str, NotificationCallback] = {}
        self._temperature = random.randint(18, 24)
        self._humidity = random.randint(35, 55)
        self._lock = threading.Lock()

    def _sample(self) -> bytes:
        # slow random walk so charts look plausible
        self._temperature = max(-40, min(60, self._temperature + random.choice((-1, 0, 0, 1))))
        self._humidity = max(0, min(100, self._humidity + random.choice((-2, -1, 0, 1, 2))))
        return bytes([0x00, self._temperature & 0xFF, self._humidity, 0x00])

    # --- Peripheral --------------------------------------------------------

    def connect(self) -> None:
        if self.fail_connect:
            raise PeripheralError(f"{self.address}: connection refused")
        with self._lock:
            self.connected = True
            self.connect_count += 1

    def disconnect(self) -> None:
        with self._lock:
            self.connected = False
            self.disconnect_count += 1
            self._subscriptions.clear()

    def discover_characteristics(self) -> List[Characteristic]:
        if not self.connected:
            raise PeripheralError(f"{self.address}: not connected")
        return list(self.characteristics)

    def subscribe_notifications(
        self, characteristic: Characteristic, callback: NotificationCallback
    ) -> None:
        if not self.connected:
            raise PeripheralError(f"{self.address}: not connected")
        with self._lock:
            self._subscriptions[characteristic.uuid] = callback

    def release(self) -> None:
        self.release_count += 1

    def command(self, characteristic: Characteristic, data: bytes) -> None:
        if self.fail_send or not self.connected:
            raise PeripheralError(f"{self.address}: write failed")
        self.commands.append(bytes(data))
        reply = self.replies.get(data[0]) if data else None
        if callable(reply):
            reply = reply()
        if reply is None:
            return
        if self.reply_delay_s > 0:
            t = threading.Timer(self.reply_delay_s, self.notify, args=(characteristic.uuid, reply))
            t.daemon = True
            t.start()
        else:
            self.notify(characteristic.uuid, reply)

    # --- test hooks --------------------------------------------------------

    def notify(self, uuid: str, value: bytes) -> None:
        """Deliver a notification as if the radio received it."""
        with self._lock:
            callbacks = list(self._subscriptions.values())
        for cb in callbacks:
            cb(Notification(uuid=uuid, value=bytes(value)))

    def __repr__(self) -> str:
        return f"SimulatedPeripheral({self.address})"


class SimulatedCentral:
    def __init__(self, peripherals: Optional[List[SimulatedPeripheral]] = None) -> None:
        self._peripherals: Dict[str, SimulatedPeripheral] = {
            p.address: p for p in (peripherals or [])
        }
        self._events: "queue.Queue[CentralEvent]" = queue.Queue()
        self.scanning = False

    @classmethod
    def with_sensors(cls, count: int, reply_delay_s: float = 0.05) -> "SimulatedCentral":
        peripherals = [
            SimulatedPeripheral(
                address=f"SI:MU:LA:TE:D0:{i:02X}",
                name=f"Weather Sim {i + 1}",
                reply_delay_s=reply_delay_s,
            )
            for i in range(count)
        ]
        return cls(peripherals)

    def add(self, peripheral: SimulatedPeripheral) -> None:
        self._peripherals[peripheral.address] = peripheral
        if self.scanning:
            self._events.put(DeviceDiscovered(peripheral.address))

    def lose(self, address: str) -> None:
        """Simulate the radio reporting that a device went away."""
        p = self._peripherals.get(address)
        if p is not None:
            p.disconnect()
        self._events.put(DeviceDisconnected(address))

    # --- Central -----------------------------------------------------------

    def start_scan(self) -> None:
        self.scanning = True
        logger.info(f"Simulated scan started with {len(self._peripherals)} peripherals")
        for address in self._peripherals:
            self._events.put(DeviceDiscovered(address))

    def stop_scan(self) -> None:
        self.scanning = False

    def next_event(self, timeout: float) -> Optional[CentralEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def peripheral(self, address: str) -> Optional[SimulatedPeripheral]:
        return self._peripherals.get(address)

    def close(self) -> None:
        self.stop_scan()
