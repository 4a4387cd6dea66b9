# gateway/sensors/bleak_central.py
"""
Radio backend built on ``bleak``.

bleak is asyncio based while the scheduler is a plain thread, so the central
owns a private event loop running on its own thread. Blocking methods submit
coroutines to that loop and wait for the result; scanner detections,
disconnect callbacks and GATT notifications all run on the loop thread.

Requires BlueZ on Linux.
"""
from __future__ import annotations
import asyncio
import logging
import queue
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Coroutine, Dict, List, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

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


class BleakPeripheral:
    def __init__(self, central: "BleakCentral", device: BLEDevice, name: Optional[str]) -> None:
        self._central = central
        self._device = device
        self._client: Optional[BleakClient] = None
        self.address: str = device.address
        self.name: Optional[str] = name

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise PeripheralError(f"{self.address}: not connected")
        return self._client

    def _gatt_char(self, characteristic: Characteristic) -> BleakGATTCharacteristic:
        client = self._require_client()
        gatt_char = client.services.get_characteristic(characteristic.handle or characteristic.uuid)
        if gatt_char is None:
            raise PeripheralError(f"{self.address}: unknown characteristic {characteristic.uuid}")
        return gatt_char

    def connect(self) -> None:
        client = BleakClient(
            self._device,
            disconnected_callback=self._on_client_disconnected,
            **self._central._adapter_kwargs(),
        )
        self._client = client
        try:
            self._central._submit(client.connect(), f"connect {self.address}")
        except PeripheralError:
            self._client = None
            raise

    def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        # detach first so the callback for this client counts as requested
        self._client = None
        self._central._submit(client.disconnect(), f"disconnect {self.address}")

    def release(self) -> None:
        self._central._release(self.address)

    def _on_client_disconnected(self, client: BleakClient) -> None:
        # loop thread
        if client is not self._client:
            logger.debug(f"{self.address} disconnected on request")
            return
        self._client = None
        self._central._on_disconnected(self.address)

    def discover_characteristics(self) -> List[Characteristic]:
        client = self._require_client()
        # bleak resolves services while connecting
        try:
            services = client.services
        except BleakError as e:
            raise PeripheralError(f"{self.address}: {e}") from e
        return [
            Characteristic(uuid=c.uuid.lower(), handle=c.handle)
            for s in services
            for c in s.characteristics
        ]

    def command(self, characteristic: Characteristic, data: bytes) -> None:
        gatt_char = self._gatt_char(characteristic)
        self._central._submit(
            self._require_client().write_gatt_char(gatt_char, bytes(data), response=False),
            f"write {self.address}",
        )

    def subscribe_notifications(
        self, characteristic: Characteristic, callback: NotificationCallback
    ) -> None:
        gatt_char = self._gatt_char(characteristic)

        def _handler(sender: BleakGATTCharacteristic, data: bytearray) -> None:
            callback(Notification(uuid=sender.uuid.lower(), value=bytes(data)))

        self._central._submit(
            self._require_client().start_notify(gatt_char, _handler),
            f"subscribe {self.address}",
        )

    def __repr__(self) -> str:
        return f"BleakPeripheral({self.address} {self.name})"


class BleakCentral:
    """
    Scans for advertisements and reports lifecycle events.

    A peripheral is reported once when first seen with a matching name. It is
    reported again only after the radio lost it or the gateway released it.
    Disconnects the gateway requested itself are not reported, so a device
    waiting to be inspected again is never handed out twice.
    """

    def __init__(
        self,
        name_filter: str = "",
        adapter: str = "",
        operation_timeout_s: float = 15.0,
    ) -> None:
        self.name_filter = name_filter
        self.adapter = adapter
        self.operation_timeout_s = operation_timeout_s

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="ble-central", daemon=True)
        self._scanner: Optional[BleakScanner] = None
        self._events: "queue.Queue[CentralEvent]" = queue.Queue()
        self._peripherals: Dict[str, BleakPeripheral] = {}
        self._reported: Set[str] = set()
        self._lock = threading.Lock()
        self._thread.start()

    # --- loop plumbing -----------------------------------------------------

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _adapter_kwargs(self) -> Dict[str, Any]:
        return {"adapter": self.adapter} if self.adapter else {}

    def _submit(self, coro: Coroutine[Any, Any, Any], what: str) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(self.operation_timeout_s)
        except FutureTimeoutError as e:
            future.cancel()
            raise PeripheralError(f"{what}: timed out after {self.operation_timeout_s}s") from e
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise PeripheralError(f"{what}: {e}") from e

    # --- callbacks (loop thread) -------------------------------------------

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData) -> None:
        name = advertisement.local_name or device.name
        if self.name_filter and (not name or self.name_filter not in name):
            return
        with self._lock:
            peripheral = self._peripherals.get(device.address)
            if peripheral is None:
                self._peripherals[device.address] = BleakPeripheral(self, device, name)
            elif name:
                peripheral.name = name
            if device.address in self._reported:
                return
            self._reported.add(device.address)
        logger.info(f"{device.address} discovered ({name})")
        self._events.put(DeviceDiscovered(device.address))

    def _release(self, address: str) -> None:
        with self._lock:
            self._reported.discard(address)

    def _on_disconnected(self, address: str) -> None:
        with self._lock:
            self._reported.discard(address)
        logger.info(f"{address} disconnected")
        self._events.put(DeviceDisconnected(address))

    # --- Central -----------------------------------------------------------

    def start_scan(self) -> None:
        async def _start() -> BleakScanner:
            scanner = BleakScanner(detection_callback=self._on_detection, **self._adapter_kwargs())
            await scanner.start()
            return scanner

        self._scanner = self._submit(_start(), "start scan")
        logger.info(f"BLE scan started (name filter {self.name_filter!r})")

    def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self._submit(scanner.stop(), "stop scan")
            logger.info("BLE scan stopped")

    def next_event(self, timeout: float) -> Optional[CentralEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def peripheral(self, address: str) -> Optional[BleakPeripheral]:
        with self._lock:
            return self._peripherals.get(address)

    def close(self) -> None:
        try:
            self.stop_scan()
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)
