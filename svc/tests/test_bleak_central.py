"""
Tests for the bleak radio backend, run against in-memory stand-ins for
BleakClient and BleakScanner.

Tests cover:
- Name filter and reporting each address once
- Re-reporting after an external loss or a release, never after our own disconnect
- Error and timeout mapping to PeripheralError
- A requeued sensor is inspected again without a duplicate discovery
"""
import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from gateway.sensors import bleak_central
from gateway.sensors.alpha import ALPHA_CHARACTERISTIC_UUID, CMD_HELLO, CMD_READ, HELLO_RESPONSE
from gateway.sensors.bleak_central import BleakCentral
from gateway.sensors.interface import DeviceDisconnected, DeviceDiscovered, PeripheralError

ADDRESS = "AA:BB:CC:DD:EE:01"
REPLIES = {
    CMD_HELLO: HELLO_RESPONSE,
    CMD_READ: bytes([0x00, 0xEC, 0x37, 0x00]),
}


class FakeGattChar:
    def __init__(self, uuid, handle):
        self.uuid = uuid
        self.handle = handle


class FakeServices:
    def __init__(self):
        self.char = FakeGattChar(ALPHA_CHARACTERISTIC_UUID.upper(), 0x25)

    def __iter__(self):
        return iter([SimpleNamespace(characteristics=[self.char])])

    def get_characteristic(self, specifier):
        if specifier in (self.char.handle, self.char.uuid, self.char.uuid.lower()):
            return self.char
        return None


class FakeClient:
    """BleakClient stand-in; the device namespace carries the failure switches."""

    created = []

    def __init__(self, device, disconnected_callback=None, **kwargs):
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.services = FakeServices()
        self._handler = None
        FakeClient.created.append(self)

    async def connect(self):
        if self.device.fail_connect:
            raise BleakError("connection refused")
        self.is_connected = True

    async def disconnect(self):
        was_connected = self.is_connected
        self.is_connected = False
        # bleak also reports disconnects the caller asked for
        if was_connected and self.disconnected_callback:
            self.disconnected_callback(self)

    async def write_gatt_char(self, char, data, response=False):
        if self.device.fail_write:
            raise BleakError("write failed")
        reply = REPLIES.get(data[0])
        if reply is not None and self._handler is not None:
            self._handler(char, bytearray(reply))

    async def start_notify(self, char, handler):
        self._handler = handler

    def drop(self):
        """The device went out of range."""
        self.is_connected = False
        self.disconnected_callback(self)


class FakeScanner:
    instances = []

    def __init__(self, detection_callback=None, **kwargs):
        self.detection_callback = detection_callback
        self.running = False
        FakeScanner.instances.append(self)

    async def start(self):
        self.running = True

    async def stop(self):
        self.running = False


def _device(address=ADDRESS, name="Weather Kitchen", **switches):
    return SimpleNamespace(
        address=address,
        name=name,
        fail_connect=switches.get("fail_connect", False),
        fail_write=switches.get("fail_write", False),
    )


def _advertise(device, local_name=None):
    scanner = FakeScanner.instances[-1]
    scanner.detection_callback(device, SimpleNamespace(local_name=local_name))


def _connected_clients():
    return [c for c in FakeClient.created if c.is_connected]


@pytest.fixture
def central(monkeypatch):
    FakeClient.created = []
    FakeScanner.instances = []
    monkeypatch.setattr(bleak_central, "BleakClient", FakeClient)
    monkeypatch.setattr(bleak_central, "BleakScanner", FakeScanner)
    c = BleakCentral(name_filter="Weather", operation_timeout_s=1.0)
    c.start_scan()
    yield c
    c.close()


class TestDiscovery:
    def test_scan_starts_and_stops(self, central):
        scanner = FakeScanner.instances[-1]
        assert scanner.running
        central.stop_scan()
        assert not scanner.running

    def test_name_filter(self, central):
        _advertise(_device(name="Headphones"))
        _advertise(_device(address="AA:BB:CC:DD:EE:02", name=None))
        assert central.next_event(0.01) is None

        _advertise(_device(name=None), local_name="Weather Attic")
        assert central.next_event(0.01) == DeviceDiscovered(ADDRESS)
        assert central.peripheral(ADDRESS).name == "Weather Attic"

    def test_reported_once(self, central):
        device = _device()
        _advertise(device)
        _advertise(device)
        assert central.next_event(0.01) == DeviceDiscovered(ADDRESS)
        assert central.next_event(0.01) is None

    def test_unknown_address(self, central):
        assert central.peripheral("00:00:00:00:00:00") is None


class TestDisconnects:
    def test_requested_disconnect_is_silent(self, central):
        device = _device()
        _advertise(device)
        central.next_event(0.01)
        p = central.peripheral(ADDRESS)

        p.connect()
        p.disconnect()
        assert central.next_event(0.01) is None
        # still handed out, so not reported again
        _advertise(device)
        assert central.next_event(0.01) is None

    def test_release_allows_report_again(self, central):
        device = _device()
        _advertise(device)
        central.next_event(0.01)

        central.peripheral(ADDRESS).release()
        _advertise(device)
        assert central.next_event(0.01) == DeviceDiscovered(ADDRESS)

    def test_external_loss_is_reported(self, central):
        device = _device()
        _advertise(device)
        central.next_event(0.01)
        p = central.peripheral(ADDRESS)
        p.connect()

        FakeClient.created[-1].drop()
        assert central.next_event(0.01) == DeviceDisconnected(ADDRESS)
        with pytest.raises(PeripheralError):
            p.discover_characteristics()

        _advertise(device)
        assert central.next_event(0.01) == DeviceDiscovered(ADDRESS)

    def test_failed_connect(self, central):
        _advertise(_device(fail_connect=True))
        central.next_event(0.01)
        p = central.peripheral(ADDRESS)

        with pytest.raises(PeripheralError):
            p.connect()
        with pytest.raises(PeripheralError):
            p.discover_characteristics()
        p.disconnect()
        assert central.next_event(0.01) is None


class TestSubmit:
    def test_bleak_error_becomes_peripheral_error(self, central):
        async def boom():
            raise BleakError("adapter gone")

        with pytest.raises(PeripheralError, match="adapter gone"):
            central._submit(boom(), "test")

    def test_timeout_becomes_peripheral_error(self, central):
        central.operation_timeout_s = 0.05
        with pytest.raises(PeripheralError, match="timed out"):
            central._submit(asyncio.sleep(1), "test")

    def test_result_is_returned(self, central):
        async def answer():
            return 42

        assert central._submit(answer(), "test") == 42


class TestWithRegistry:
    def _discover(self, central, registry):
        event = central.next_event(0.01)
        assert event == DeviceDiscovered(ADDRESS)
        registry.on_discovered(central.peripheral(ADDRESS))

    def test_session_reads_through_the_radio(self, central, registry):
        _advertise(_device())
        self._discover(central, registry)

        assert registry.pop_and_inspect() is not None
        results = registry.poll_all()
        assert [r.reading.value for r in results[0][1]] == [-20, 55]

    def test_requeued_sensor_is_not_reported_twice(self, central, registry):
        device = _device()
        _advertise(device)
        self._discover(central, registry)
        registry.pop_and_inspect()

        device.fail_write = True
        assert registry.poll_all() == []
        assert registry.pending_addresses() == [ADDRESS]

        # the device keeps advertising while it waits for inspection
        _advertise(device)
        assert central.next_event(0.01) is None
        assert registry.pending_addresses() == [ADDRESS]

        device.fail_write = False
        assert registry.pop_and_inspect() is not None
        assert registry.pending_addresses() == []
        assert registry.active_addresses() == [ADDRESS]
        assert registry.pop_and_inspect() is None
        assert len(_connected_clients()) == 1

    def test_failed_inspection_is_reported_again(self, central, registry):
        device = _device(fail_connect=True)
        _advertise(device)
        self._discover(central, registry)

        assert registry.pop_and_inspect() is None
        device.fail_connect = False
        _advertise(device)
        self._discover(central, registry)
        assert registry.pop_and_inspect() is not None
        assert len(_connected_clients()) == 1
