from __future__ import annotations
from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from .sensor import TimestampedReading


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status (always 'ok' if service is running)")
    mode: str = Field(description="Radio mode: 'sim' (simulated sensors) or 'ble' (bleak)")


class SensorInfo(BaseModel):
    """A sensor known to storage, online or not."""
    id: int = Field(description="Storage handle used in the /api/sensors/{id} routes")
    family: str = Field(description="Sensor protocol family (e.g., Alpha)")
    address: str = Field(description="Radio address, the stable identity of the sensor")
    name: Optional[str] = Field(default=None, description="Advertised name, if any")


class SensorStatusResponse(BaseModel):
    status: Literal["Online", "Offline"] = Field(
        description="Online while the gateway holds a live session with the sensor"
    )


class ReadingResponse(BaseModel):
    """One stored reading."""
    timestamp: datetime = Field(description="UTC time the sensor was polled")
    kind: Literal["T", "H"] = Field(description="'T' temperature in C, 'H' relative humidity in %")
    value: int

    @classmethod
    def from_reading(cls, r: TimestampedReading) -> "ReadingResponse":
        return cls(timestamp=r.timestamp, kind=r.reading.kind.value, value=r.reading.value)


class GatewayStateResponse(BaseModel):
    """Snapshot of the device lifecycle manager."""
    pending: List[str] = Field(default_factory=list, description="Addresses waiting for inspection")
    active: List[str] = Field(default_factory=list, description="Addresses with a live session")
    online: List[str] = Field(default_factory=list, description="Addresses reported as online")


class ErrorResponse(BaseModel):
    """Standard error response format."""
    detail: str = Field(description="Error message describing what went wrong")
