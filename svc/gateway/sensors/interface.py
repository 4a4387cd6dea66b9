# gateway/sensors/interface.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Union

# Bluetooth base UUID; 16-bit ids are expanded into its first group
_BASE_UUID = "0000{:04x}-0000-1000-8000-00805f9b34fb"


def uuid16(short_id: int) -> str:
    """Expand a 16-bit characteristic id, e.g. 0xFFE1, to its 128-bit UUID string."""
    return _BASE_UUID.format(short_id)


class PeripheralError(Exception):
    """Raised by a peripheral when a radio operation fails."""


@dataclass(frozen=True)
class Characteristic:
    uuid: str           # normalized 128-bit, lower case
    handle: int = 0


@dataclass(frozen=True)
class Notification:
    uuid: str           # characteristic that produced the payload
    value: bytes


@dataclass(frozen=True)
class DeviceDiscovered:
    address: str


@dataclass(frozen=True)
class DeviceDisconnected:
    address: str


CentralEvent = Union[DeviceDiscovered, DeviceDisconnected]
NotificationCallback = Callable[[Notification], None]


class Peripheral(Protocol):
    """
    Minimal interface of a discovered wireless device.

    All methods block the caller until the radio operation completes and raise
    PeripheralError on failure. Notification callbacks may run on a thread
    owned by the implementation and must not block.
    """

    address: str
    name: Optional[str]

    def connect(self) -> None:
        ...

    def disconnect(self) -> None:
        ...

    def discover_characteristics(self) -> List[Characteristic]:
        ...

    def command(self, characteristic: Characteristic, data: bytes) -> None:
        ...

    def subscribe_notifications(
        self, characteristic: Characteristic, callback: NotificationCallback
    ) -> None:
        ...

    def release(self) -> None:
        """The gateway dropped this device; the radio may report it again."""
        ...


class Central(Protocol):
    """The scanning side of the radio: produces lifecycle events and peripherals."""

    def start_scan(self) -> None:
        ...

    def stop_scan(self) -> None:
        ...

    def next_event(self, timeout: float) -> Optional[CentralEvent]:
        """Return the next lifecycle event, or None if none arrived within timeout."""
        ...

    def peripheral(self, address: str) -> Optional[Peripheral]:
        ...

    def close(self) -> None:
        """Stop scanning and release the radio."""
        ...
