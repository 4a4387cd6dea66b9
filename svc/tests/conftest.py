"""Shared fixtures: a throwaway sqlite store and simulated peripherals."""
import pytest

from gateway.registry import DeviceRegistry
from gateway.sensors.simulator import SimulatedPeripheral
from gateway.state import SensorStore

# keep every wait in the tests short
FAST_TIMEOUT_S = 0.1


@pytest.fixture
def store(tmp_path):
    """Initialized store backed by a temporary database file."""
    s = SensorStore(str(tmp_path / "data" / "sensors.db"), timeout_s=0.1)
    s.initialize()
    return s


@pytest.fixture
def registry():
    r = DeviceRegistry(response_timeout_s=FAST_TIMEOUT_S)
    yield r
    r.close()


@pytest.fixture
def make_peripheral():
    def _make(address: str = "AA:BB:CC:DD:EE:01", **kwargs) -> SimulatedPeripheral:
        return SimulatedPeripheral(address=address, **kwargs)
    return _make
