"""
Tests for SQLite storage of sensors and readings.

Tests cover:
- Database context manager (commit, rollback, error translation)
- Sensor registration and handle lookup
- Reading insert and queries (all, after timestamp, latest per kind)
- Busy and conflict detection
"""
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from gateway.sensor import DomainSensor, Reading, ReadingKind, SensorFamily
from gateway.state import (
    SensorNotFound,
    SensorStore,
    StorageBusy,
    StorageConflict,
    StorageError,
)

T0 = datetime(2021, 3, 14, 12, 0, 0, tzinfo=timezone.utc)
KITCHEN = DomainSensor(address="AA:BB:CC:DD:EE:01", name="Weather Kitchen")


def _add(store, handle, seconds, reading):
    store.add_reading(handle, T0 + timedelta(seconds=seconds), reading)


class TestDatabaseContextManager:
    """Tests for the _db_connection context manager."""

    def test_commits_on_success(self, store):
        with store._db_connection() as conn:
            conn.execute("INSERT INTO sensors (address, name) VALUES ('A', NULL)")

        with store._db_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM sensors").fetchone()[0] == 1

    def test_rolls_back_on_error(self, store):
        with pytest.raises(ValueError):
            with store._db_connection() as conn:
                conn.execute("INSERT INTO sensors (address, name) VALUES ('A', NULL)")
                raise ValueError("Test error")

        with store._db_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM sensors").fetchone()[0] == 0

    def test_sqlite_errors_become_storage_errors(self, store):
        with pytest.raises(StorageError):
            with store._db_connection() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_unique_violation_is_conflict(self, store):
        store.create_sensor_if_not_exists(KITCHEN)
        with pytest.raises(StorageConflict):
            with store._db_connection() as conn:
                conn.execute("INSERT INTO sensors (address, name) VALUES (?, NULL)", (KITCHEN.address,))

    def test_locked_database_is_busy(self, store):
        store.create_sensor_if_not_exists(KITCHEN)
        handle = store.get_sensor_handle(KITCHEN)
        blocker = sqlite3.connect(store.db_file, isolation_level=None)
        try:
            blocker.execute("BEGIN EXCLUSIVE")
            with pytest.raises(StorageBusy):
                store.add_reading(handle, T0, Reading.temperature(20))
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        store.add_reading(handle, T0, Reading.temperature(20))
        assert len(store.get_readings(handle)) == 1


class TestInitialize:
    def test_creates_directory_and_is_repeatable(self, tmp_path):
        s = SensorStore(str(tmp_path / "nested" / "dir" / "db.sqlite"))
        s.initialize()
        s.initialize()
        assert (tmp_path / "nested" / "dir" / "db.sqlite").exists()
        assert s.list_sensors() == []


class TestSensors:
    def test_create_then_lookup_round_trip(self, store):
        assert store.create_sensor_if_not_exists(KITCHEN) is True
        handle = store.get_sensor_handle(KITCHEN)
        sensor = store.get_sensor_by_handle(handle)
        assert sensor.address == KITCHEN.address
        assert sensor.name == KITCHEN.name
        assert sensor.family == SensorFamily.ALPHA

    def test_create_is_idempotent(self, store):
        assert store.create_sensor_if_not_exists(KITCHEN) is True
        assert store.create_sensor_if_not_exists(KITCHEN) is False
        assert len(store.list_sensors()) == 1

    def test_identity_is_the_address(self, store):
        store.create_sensor_if_not_exists(KITCHEN)
        renamed = DomainSensor(address=KITCHEN.address, name="Weather Pantry")
        assert store.create_sensor_if_not_exists(renamed) is False
        assert store.get_sensor_handle(renamed) == store.get_sensor_handle(KITCHEN)

    def test_unnamed_sensor(self, store):
        store.create_sensor_if_not_exists(DomainSensor(address="AA:BB:CC:DD:EE:02"))
        handle = store.get_sensor_by_addr("AA:BB:CC:DD:EE:02")
        assert store.get_sensor_by_handle(handle).name is None

    def test_list_sensors_in_registration_order(self, store):
        for i in range(3):
            store.create_sensor_if_not_exists(DomainSensor(address=f"AA:00:00:00:00:0{i}"))
        rows = store.list_sensors()
        assert [h for h, _ in rows] == [1, 2, 3]
        assert [s.address for _, s in rows] == [f"AA:00:00:00:00:0{i}" for i in range(3)]

    def test_unknown_sensor(self, store):
        with pytest.raises(SensorNotFound):
            store.get_sensor_handle(KITCHEN)
        with pytest.raises(SensorNotFound):
            store.get_sensor_by_handle(42)


class TestReadings:
    @pytest.fixture
    def handle(self, store):
        store.create_sensor_if_not_exists(KITCHEN)
        return store.get_sensor_handle(KITCHEN)

    def test_add_and_get(self, store, handle):
        _add(store, handle, 0, Reading.temperature(-20))
        _add(store, handle, 0, Reading.humidity(55))

        readings = store.get_readings(handle)
        assert [(r.reading.kind, r.reading.value) for r in readings] == [
            (ReadingKind.TEMPERATURE, -20),
            (ReadingKind.HUMIDITY, 55),
        ]
        assert readings[0].timestamp == T0
        assert readings[0].timestamp.tzinfo is not None

    def test_naive_timestamps_are_utc(self, store, handle):
        store.add_reading(handle, T0.replace(tzinfo=None), Reading.temperature(1))
        assert store.get_readings(handle)[0].timestamp == T0

    def test_unknown_handle_rejected(self, store, handle):
        with pytest.raises(SensorNotFound):
            store.add_reading(handle + 1, T0, Reading.temperature(1))
        assert store.get_readings(handle) == []

    def test_readings_are_per_sensor(self, store, handle):
        store.create_sensor_if_not_exists(DomainSensor(address="AA:BB:CC:DD:EE:02"))
        other = store.get_sensor_by_addr("AA:BB:CC:DD:EE:02")
        _add(store, handle, 0, Reading.temperature(1))
        _add(store, other, 0, Reading.temperature(2))
        assert [r.reading.value for r in store.get_readings(other)] == [2]

    def test_readings_after_is_strict(self, store, handle):
        for i in range(4):
            _add(store, handle, i * 60, Reading.temperature(i))

        after = store.get_readings_after(handle, T0 + timedelta(seconds=60))
        assert [r.reading.value for r in after] == [2, 3]

    def test_latest_per_kind(self, store, handle):
        _add(store, handle, 0, Reading.temperature(10))
        _add(store, handle, 0, Reading.humidity(40))
        _add(store, handle, 60, Reading.temperature(11))
        _add(store, handle, 60, Reading.humidity(41))

        assert store.get_latest_reading(handle, ReadingKind.TEMPERATURE).reading.value == 11
        assert store.get_latest_reading(handle, ReadingKind.HUMIDITY).reading.value == 41

    def test_latest_without_readings(self, store, handle):
        with pytest.raises(SensorNotFound):
            store.get_latest_reading(handle, ReadingKind.HUMIDITY)
