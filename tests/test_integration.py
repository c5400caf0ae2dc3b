"""End-to-end tests against a real WebSocket central system."""

import asyncio
from datetime import UTC, datetime

import pytest
import websockets
from doubles import FakeModbusClient, make_station_config, wait_for
from ocpp.routing import on
from ocpp.v16 import ChargePoint as OCPPChargePoint
from ocpp.v16 import call, call_result
from ocpp.v16.enums import (
    Action,
    AuthorizationStatus,
    ChargePointStatus,
    RegistrationStatus,
    RemoteStartStopStatus,
)
from websockets.asyncio.server import serve

from kilowatt.database import Database
from kilowatt.hardware import MemoryRelay, MeterBus
from kilowatt.runtime import StationRuntime

pytestmark = pytest.mark.integration

BLOCKED = "BLOCKED"


class CentralSystem(OCPPChargePoint):
    """Central system side of one charge point connection."""

    def __init__(self, id: str, connection):
        super().__init__(id, connection)
        self.statuses: list[tuple[int, str]] = []
        self.started: list[dict] = []
        self.stopped: list[dict] = []
        self.next_transaction_id = 1001

    def connector_statuses(self, connector_id: int) -> list[str]:
        return [status for cid, status in self.statuses if cid == connector_id]

    @on(Action.boot_notification)
    async def on_boot_notification(self, charge_point_vendor, charge_point_model, **kwargs):
        return call_result.BootNotification(
            current_time=datetime.now(UTC).isoformat(),
            interval=300,
            status=RegistrationStatus.accepted,
        )

    @on(Action.heartbeat)
    async def on_heartbeat(self, **kwargs):
        return call_result.Heartbeat(current_time=datetime.now(UTC).isoformat())

    @on(Action.status_notification)
    async def on_status_notification(self, connector_id, error_code, status, **kwargs):
        self.statuses.append((connector_id, status))
        return call_result.StatusNotification()

    def _id_tag_info(self, id_tag: str) -> dict:
        if id_tag == BLOCKED:
            return {"status": AuthorizationStatus.blocked}
        return {"status": AuthorizationStatus.accepted}

    @on(Action.authorize)
    async def on_authorize(self, id_tag, **kwargs):
        return call_result.Authorize(id_tag_info=self._id_tag_info(id_tag))

    @on(Action.start_transaction)
    async def on_start_transaction(self, connector_id, id_tag, meter_start, timestamp, **kwargs):
        transaction_id = self.next_transaction_id
        self.next_transaction_id += 1
        self.started.append(
            {
                "transaction_id": transaction_id,
                "connector_id": connector_id,
                "id_tag": id_tag,
                "meter_start": meter_start,
            }
        )
        return call_result.StartTransaction(
            transaction_id=transaction_id, id_tag_info=self._id_tag_info(id_tag)
        )

    @on(Action.stop_transaction)
    async def on_stop_transaction(self, meter_stop, timestamp, transaction_id, **kwargs):
        self.stopped.append(
            {"transaction_id": transaction_id, "meter_stop": meter_stop, **kwargs}
        )
        return call_result.StopTransaction(id_tag_info={"status": AuthorizationStatus.accepted})

    @on(Action.meter_values)
    async def on_meter_values(self, connector_id, meter_value, **kwargs):
        return call_result.MeterValues()


class CentralSystemServer:
    def __init__(self):
        self.charge_points: list[CentralSystem] = []
        self.paths: list[str] = []
        self.port = 0

    async def handler(self, connection):
        path = connection.request.path
        self.paths.append(path)
        charge_point = CentralSystem(path.rstrip("/").rsplit("/", 1)[-1], connection)
        self.charge_points.append(charge_point)
        try:
            await charge_point.start()
        except websockets.exceptions.ConnectionClosed:
            pass

    async def connected(self) -> CentralSystem:
        await wait_for(lambda: bool(self.charge_points), timeout=5.0)
        return self.charge_points[-1]


@pytest.fixture
async def central_system():
    server = CentralSystemServer()
    async with serve(server.handler, "127.0.0.1", 0, subprotocols=["ocpp1.6"]) as ws_server:
        server.port = ws_server.sockets[0].getsockname()[1]
        yield server


@pytest.fixture
async def station(central_system, temp_db):
    config = make_station_config(
        centralSystemUrl=f"ws://127.0.0.1:{central_system.port}/ocpp",
        rpc={"callTimeoutSeconds": 5, "reconnectInitialSeconds": 0.1},
    )
    modbus_client = FakeModbusClient()
    relay = MemoryRelay()
    runtime = StationRuntime(config, temp_db, MeterBus(modbus_client), relay)
    task = asyncio.create_task(runtime.run())

    yield runtime, modbus_client, relay

    await runtime.stop()
    await asyncio.wait_for(task, 5)


async def booted_central_system(central_system) -> CentralSystem:
    central = await central_system.connected()
    await wait_for(lambda: len(central.statuses) >= 3, timeout=5.0)
    return central


async def test_connects_with_identity_and_boots(central_system, station):
    central = await booted_central_system(central_system)

    assert central_system.paths == ["/ocpp/KW-TEST-1"]
    assert central.statuses[:3] == [(0, "Available"), (1, "Available"), (2, "Available")]


async def test_remote_start_and_stop(central_system, station):
    runtime, modbus_client, relay = station
    central = await booted_central_system(central_system)
    modbus_client.set_energy(1, 1000)

    response = await central.call(call.RemoteStartTransaction(id_tag="TAG1", connector_id=1))

    assert response.status == RemoteStartStopStatus.accepted
    await wait_for(lambda: central.connector_statuses(1)[-1:] == ["Charging"], timeout=5.0)
    assert central.started == [
        {"transaction_id": 1001, "connector_id": 1, "id_tag": "TAG1", "meter_start": 1000}
    ]
    assert relay.outputs["relay1"] is True

    modbus_client.set_energy(1, 4200)
    response = await central.call(call.RemoteStopTransaction(transaction_id=1001))

    assert response.status == RemoteStartStopStatus.accepted
    await wait_for(lambda: bool(central.stopped), timeout=5.0)
    assert central.stopped[0]["transaction_id"] == 1001
    assert central.stopped[0]["meter_stop"] == 4200
    assert central.stopped[0]["reason"] == "Remote"
    await wait_for(lambda: central.connector_statuses(1)[-1:] == ["Available"], timeout=5.0)
    assert relay.outputs["relay1"] is False
    assert runtime.controller.connectors[1].status == ChargePointStatus.available


async def test_blocked_tag_never_energizes(central_system, station):
    runtime, _, relay = station
    central = await booted_central_system(central_system)

    result = await runtime.controller.sessions.start(1, BLOCKED)

    assert not result.accepted
    assert central.started == []
    assert "relay1" not in relay.outputs


async def test_reconnects_after_central_system_drops(central_system, station):
    runtime, _, _ = station
    first = await booted_central_system(central_system)

    await first._connection.close()

    await wait_for(lambda: len(central_system.charge_points) == 2, timeout=5.0)
    second = await booted_central_system(central_system)
    assert second.statuses[:3] == [(0, "Available"), (1, "Available"), (2, "Available")]
    await wait_for(runtime.controller.booted.is_set, timeout=5.0)


async def test_state_is_persisted_between_runs(central_system, temp_db):
    config = make_station_config(
        centralSystemUrl=f"ws://127.0.0.1:{central_system.port}/ocpp",
        rpc={"callTimeoutSeconds": 5},
    )
    runtime = StationRuntime(config, temp_db, MeterBus(FakeModbusClient()), MemoryRelay())
    task = asyncio.create_task(runtime.run())
    central = await booted_central_system(central_system)
    await central.call(call.ChangeAvailability(connector_id=2, type="Inoperative"))
    await runtime.stop()
    await asyncio.wait_for(task, 5)

    restarted = StationRuntime(
        config, Database(temp_db.db_path), MeterBus(FakeModbusClient()), MemoryRelay()
    )
    await restarted.setup()

    assert restarted.controller.connectors[2].status == ChargePointStatus.unavailable
    await restarted.shutdown()
