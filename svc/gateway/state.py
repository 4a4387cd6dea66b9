from __future__ import annotations
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, List, Optional

from .sensor import DomainSensor, Reading, ReadingKind, SensorFamily, TimestampedReading

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Storage failure that is not one of the specific kinds below."""


class StorageBusy(StorageError):
    """The database is locked by another writer; retrying later may succeed."""


class SensorNotFound(StorageError):
    pass


class StorageConflict(StorageError):
    """A uniqueness constraint was violated."""


def _to_storage_error(err: sqlite3.Error) -> StorageError:
    msg = str(err).lower()
    if isinstance(err, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return StorageBusy(str(err))
    if isinstance(err, sqlite3.IntegrityError) and "unique" in msg:
        return StorageConflict(str(err))
    return StorageError(str(err))


def _to_ts(timestamp: datetime) -> float:
    if timestamp.tzinfo is None:
        # naive timestamps are UTC
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.timestamp()


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _to_sensor(row: sqlite3.Row) -> DomainSensor:
    # no other families are stored for now
    return DomainSensor(address=row["address"], name=row["name"], family=SensorFamily.ALPHA)


def _to_reading(row: sqlite3.Row) -> TimestampedReading:
    return TimestampedReading(
        timestamp=_from_ts(row["ts"]),
        reading=Reading(ReadingKind(row["kind"]), row["value"]),
    )


class SensorStore:
    """
    Sqlite storage for sensors and their readings.

    Handles are the integer row ids of the sensors table. Every sqlite failure
    surfaces as a StorageError subclass so callers can tell a busy database
    (retry) from a real problem.
    """

    def __init__(self, db_file: str, timeout_s: float = 5.0) -> None:
        self.db_file = db_file
        self.timeout_s = timeout_s

    def _ensure_dirs(self) -> None:
        d = os.path.dirname(self.db_file)
        if d:
            os.makedirs(d, exist_ok=True)

    @contextmanager
    def _db_connection(
        self, row_factory: Optional[Callable[[sqlite3.Cursor, tuple], Any]] = sqlite3.Row
    ) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections.

        Automatically handles:
        - Connection creation and cleanup
        - Transaction commit on success
        - Transaction rollback on error
        - Translation of sqlite errors into StorageError
        """
        try:
            conn = sqlite3.connect(self.db_file, timeout=self.timeout_s)
        except sqlite3.Error as e:
            raise _to_storage_error(e) from e
        if row_factory:
            conn.row_factory = row_factory
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise _to_storage_error(e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """
        Create the database and tables. Called once at application startup;
        a failure here is fatal for the service.
        """
        self._ensure_dirs()
        with self._db_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sensors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    address TEXT NOT NULL UNIQUE,
                    name TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS readings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sensor INTEGER NOT NULL REFERENCES sensors(id),
                    ts REAL NOT NULL,
                    kind CHAR(1) NOT NULL,
                    value INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS readings_sensor_ts ON readings (sensor, ts)"
            )
        logger.info(f"Database ready at {self.db_file}")

    # --- sensors -----------------------------------------------------------

    def create_sensor_if_not_exists(self, sensor: DomainSensor) -> bool:
        """Insert the sensor unless its address is known. Returns True if inserted."""
        with self._db_connection() as conn:
            row = conn.execute(
                "SELECT id FROM sensors WHERE address = ?", (sensor.address,)
            ).fetchone()
            if row is not None:
                return False
            conn.execute(
                "INSERT INTO sensors (address, name) VALUES (?, ?)",
                (sensor.address, sensor.name),
            )
        logger.info(f"Registered sensor {sensor.address} ({sensor.name or 'unnamed'})")
        return True

    def get_sensor_handle(self, sensor: DomainSensor) -> int:
        return self.get_sensor_by_addr(sensor.address)

    def get_sensor_by_addr(self, address: str) -> int:
        with self._db_connection() as conn:
            row = conn.execute(
                "SELECT id FROM sensors WHERE address = ?", (address,)
            ).fetchone()
        if row is None:
            raise SensorNotFound(address)
        return row["id"]

    def get_sensor_by_handle(self, handle: int) -> DomainSensor:
        with self._db_connection() as conn:
            row = conn.execute(
                "SELECT id, address, name FROM sensors WHERE id = ?", (handle,)
            ).fetchone()
        if row is None:
            raise SensorNotFound(str(handle))
        return _to_sensor(row)

    def list_sensors(self) -> List[tuple[int, DomainSensor]]:
        with self._db_connection() as conn:
            rows = conn.execute("SELECT id, address, name FROM sensors ORDER BY id").fetchall()
        return [(r["id"], _to_sensor(r)) for r in rows]

    # --- readings ----------------------------------------------------------

    def add_reading(self, handle: int, timestamp: datetime, reading: Reading) -> None:
        with self._db_connection() as conn:
            known = conn.execute("SELECT 1 FROM sensors WHERE id = ?", (handle,)).fetchone()
            if known is None:
                raise SensorNotFound(str(handle))
            conn.execute(
                "INSERT INTO readings (sensor, ts, kind, value) VALUES (?, ?, ?, ?)",
                (handle, _to_ts(timestamp), reading.kind.value, reading.value),
            )

    def get_readings(self, handle: int) -> List[TimestampedReading]:
        with self._db_connection() as conn:
            rows = conn.execute(
                "SELECT ts, kind, value FROM readings WHERE sensor = ? ORDER BY ts, id",
                (handle,),
            ).fetchall()
        return [_to_reading(r) for r in rows]

    def get_readings_after(self, handle: int, timestamp: datetime) -> List[TimestampedReading]:
        """Readings strictly newer than timestamp."""
        with self._db_connection() as conn:
            rows = conn.execute(
                "SELECT ts, kind, value FROM readings WHERE sensor = ? AND ts > ? ORDER BY ts, id",
                (handle, _to_ts(timestamp)),
            ).fetchall()
        return [_to_reading(r) for r in rows]

    def get_latest_reading(self, handle: int, kind: ReadingKind) -> TimestampedReading:
        with self._db_connection() as conn:
            row = conn.execute(
                """
                SELECT ts, kind, value FROM readings
                WHERE sensor = ? AND kind = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (handle, ReadingKind(kind).value),
            ).fetchone()
        if row is None:
            raise SensorNotFound(f"no {ReadingKind(kind).value} reading for sensor {handle}")
        return _to_reading(row)
