"""Pytest configuration and fixtures."""

import tempfile
from pathlib import Path

import pytest
from doubles import FakeModbusClient, FakeWebSocket, make_station_config, wait_for

from kilowatt.database import Database
from kilowatt.hardware import MemoryRelay, MeterBus
from kilowatt.runtime import StationRuntime


@pytest.fixture
async def temp_db():
    """Create a temporary SQLite database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        db_path = tmp.name

    # Initialize database with schema
    db = Database(db_path)
    await db.initialize_schema()

    yield db

    # Cleanup
    await db.disconnect()
    Path(db_path).unlink(missing_ok=True)
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
async def db_connection(temp_db):
    """Provide a database connection for testing."""
    conn = await temp_db.connect()
    yield conn
    # Connection is cleaned up by temp_db fixture


@pytest.fixture
def station_config():
    return make_station_config()


@pytest.fixture
def modbus_client():
    return FakeModbusClient()


@pytest.fixture
def relay():
    return MemoryRelay()


@pytest.fixture
async def runtime(station_config, temp_db, modbus_client, relay):
    """A fully wired station that has not connected yet."""
    station = StationRuntime(station_config, temp_db, MeterBus(modbus_client), relay)
    await station.setup()
    station.controller.boot_retry_interval = 0.01

    yield station

    await station.rpc.close()
    await station.shutdown()


@pytest.fixture
async def csms(runtime):
    """Connect the runtime to a scripted central system and wait for the boot to finish."""
    websocket = FakeWebSocket()
    runtime.rpc.attach(websocket)
    await wait_for(runtime.controller.booted.is_set)
    await wait_for(lambda: len(websocket.calls("StatusNotification")) >= 3)
    return websocket
