# gateway/sensor.py
"""
Protocol-independent sensor types shared by the scheduler, storage and HTTP layers.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class SensorFamily(str, Enum):
    ALPHA = "Alpha"


class SensorStatus(str, Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"


class ReadingKind(str, Enum):
    TEMPERATURE = "T"
    HUMIDITY = "H"


@dataclass(frozen=True)
class DomainSensor:
    """
    Persistable identity of a sensor.

    Identity is the address alone: the advertised name is optional and can
    change between advertisements, so it takes no part in equality or hashing.
    """
    address: str
    name: Optional[str] = field(default=None, compare=False)
    family: SensorFamily = field(default=SensorFamily.ALPHA, compare=False)


@dataclass(frozen=True)
class Reading:
    kind: ReadingKind
    value: int

    @classmethod
    def temperature(cls, value: int) -> "Reading":
        return cls(ReadingKind.TEMPERATURE, int(value))

    @classmethod
    def humidity(cls, value: int) -> "Reading":
        return cls(ReadingKind.HUMIDITY, int(value))


@dataclass(frozen=True)
class TimestampedReading:
    timestamp: datetime  # always UTC
    reading: Reading


@dataclass(frozen=True)
class AlphaReading:
    """One answer to the Alpha read command."""
    temperature: int    # degrees C, -128..127
    humidity: int       # percent

    def readings(self, timestamp: Optional[datetime] = None) -> List[TimestampedReading]:
        ts = timestamp or utcnow()
        return [
            TimestampedReading(ts, Reading.temperature(self.temperature)),
            TimestampedReading(ts, Reading.humidity(self.humidity)),
        ]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
