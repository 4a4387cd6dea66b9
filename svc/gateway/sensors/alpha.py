# gateway/sensors/alpha.py
"""
Driver for the "Alpha" weather sensor family.

The sensor exposes one characteristic (short id 0xFFE1) used both for commands
(write) and for answers (notify). Every command is answered by exactly one
4 byte notification:

  0x10 (hello)  -> 00 F0 14 4D
  0x66 (read)   -> status, temperature (int8), humidity (uint8), reserved

A non zero status byte means the sensor failed to sample its DHT11.
"""
from __future__ import annotations
import logging
import queue
from typing import Optional

from .interface import Characteristic, Notification, Peripheral, PeripheralError, uuid16
from ..sensor import AlphaReading, DomainSensor, SensorFamily

logger = logging.getLogger(__name__)

ALPHA_CHARACTERISTIC_UUID = uuid16(0xFFE1)
CMD_HELLO = 0x10
CMD_READ = 0x66
HELLO_RESPONSE = bytes([0x00, 0xF0, 0x14, 0x4D])
RESPONSE_TIMEOUT_S = 5.0


class SensorPollError(Exception):
    """Base class for a failed poll of an active sensor."""


class SendFailed(SensorPollError):
    pass


class PollTimeout(SensorPollError):
    pass


class UnexpectedResponse(SensorPollError):
    pass


class SensorError(SensorPollError):
    pass


def _label(peripheral: Peripheral) -> str:
    return f"{peripheral.address} {peripheral.name or '<unnamed>'}"


def _disconnect_quietly(peripheral: Peripheral) -> None:
    try:
        peripheral.disconnect()
    except PeripheralError as e:
        logger.warning(f"Could not disconnect from device {peripheral.address}, {e}")


def inspect(peripheral: Peripheral) -> Optional[Characteristic]:
    """
    Connect to the peripheral and look for the Alpha characteristic.

    Returns None if connecting or discovery fails (the peripheral is
    disconnected in that case) or if the characteristic is missing (the caller
    is responsible for disconnecting). Finding the characteristic does not yet
    prove the device speaks the protocol; see AlphaSensor.try_new.
    """
    logger.info(f"Connecting to {_label(peripheral)}...")
    try:
        peripheral.connect()
        logger.info(f"Discovering characteristics of {peripheral.address}...")
        characteristics = peripheral.discover_characteristics()
    except PeripheralError as e:
        logger.warning(f"Inspection of {peripheral.address} failed: {e}")
        logger.info(f"Disconnecting {peripheral.address}...")
        _disconnect_quietly(peripheral)
        return None

    for c in characteristics:
        if c.uuid.lower() == ALPHA_CHARACTERISTIC_UUID:
            logger.info(f"Found characteristic in {peripheral.address}")
            return c
    logger.info(f"{peripheral.address} has no {ALPHA_CHARACTERISTIC_UUID} characteristic")
    return None


class AlphaSensor:
    """
    Live session with one Alpha sensor that passed the hello handshake.

    Notifications arrive on the radio's thread and are handed over through a
    private queue of capacity 1: only one request is ever outstanding, so a
    second payload before the first is consumed is dropped and logged.
    """

    def __init__(
        self,
        peripheral: Peripheral,
        characteristic: Characteristic,
        timeout_s: float = RESPONSE_TIMEOUT_S,
    ) -> None:
        self.peripheral = peripheral
        self.characteristic = characteristic
        self.timeout_s = timeout_s
        self._responses: "queue.Queue[bytes]" = queue.Queue(maxsize=1)
        self._closed = False

    @classmethod
    def try_new(
        cls,
        peripheral: Peripheral,
        characteristic: Characteristic,
        timeout_s: float = RESPONSE_TIMEOUT_S,
    ) -> Optional["AlphaSensor"]:
        """
        Subscribe to notifications and run the hello handshake.

        Returns None when the handshake fails. The peripheral is left
        connected; disconnecting it is up to the caller.
        """
        sensor = cls(peripheral, characteristic, timeout_s)
        try:
            peripheral.subscribe_notifications(characteristic, sensor._on_notification)
        except PeripheralError as e:
            logger.warning(f"Subscribe failed for {peripheral.address}: {e}")
            return None
        if not sensor._check_hello():
            return None
        return sensor

    @property
    def address(self) -> str:
        return self.peripheral.address

    @property
    def domain_sensor(self) -> DomainSensor:
        return DomainSensor(
            address=self.peripheral.address,
            name=self.peripheral.name,
            family=SensorFamily.ALPHA,
        )

    # --- low-level helpers -------------------------------------------------

    def _on_notification(self, notification: Notification) -> None:
        # runs on the radio's thread; never block here
        if notification.uuid.lower() != self.characteristic.uuid.lower():
            logger.warning(f"Unexpected notification uuid: {notification.uuid}")
            return
        try:
            self._responses.put_nowait(bytes(notification.value))
        except queue.Full:
            logger.warning(
                f"Dropping unsolicited payload from {self.address}: {notification.value.hex()}"
            )

    def _drain(self) -> None:
        while True:
            try:
                stale = self._responses.get_nowait()
            except queue.Empty:
                return
            logger.debug(f"Discarding late payload from {self.address}: {stale.hex()}")

    def _request(self, command: int) -> Optional[bytes]:
        """
        Send a one byte command and wait for its answer.

        Raises SendFailed if the write fails; returns None on timeout.
        """
        self._drain()
        try:
            self.peripheral.command(self.characteristic, bytes([command]))
        except PeripheralError as e:
            raise SendFailed(str(e)) from e
        try:
            return self._responses.get(timeout=self.timeout_s)
        except queue.Empty:
            return None

    def _check_hello(self) -> bool:
        try:
            data = self._request(CMD_HELLO)
        except SendFailed as e:
            logger.warning(f"Hello send to {self.address} failed: {e}")
            return False
        if data is None:
            logger.warning(f"Hello timeout for {self.address}")
            return False
        if data != HELLO_RESPONSE:
            logger.warning(f"Hello data did not match for {self.address}! {data.hex()}")
            return False
        return True

    # --- public API --------------------------------------------------------

    def poll(self) -> AlphaReading:
        """Request one temperature/humidity sample. Raises SensorPollError subclasses."""
        data = self._request(CMD_READ)
        if data is None:
            raise PollTimeout(f"no answer from {self.address} within {self.timeout_s}s")
        if len(data) != 4:
            raise UnexpectedResponse(f"{self.address} answered {data.hex()}")
        if data[0] != 0x00:
            raise SensorError(f"{self.address} reported status {data[0]:#04x}")
        # data[3] is reserved
        temperature = int.from_bytes(data[1:2], "little", signed=True)
        humidity = data[2]
        return AlphaReading(temperature=temperature, humidity=humidity)

    def close(self) -> None:
        """Disconnect the peripheral. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"Disconnecting dropped sensor {self.address}...")
        _disconnect_quietly(self.peripheral)

    def __enter__(self) -> "AlphaSensor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"AlphaSensor({_label(self.peripheral)})"
