"""Tests for the plugin framework."""

import pytest
from doubles import FakeWebSocket, wait_for
from ocpp.v16.enums import ChargePointStatus

from kilowatt.hardware import MeterBus
from kilowatt.models import PersistedConnector
from kilowatt.plugins import OrphanedTransactionPlugin
from kilowatt.plugins.base import PluginContext, PluginHook, StationPlugin
from kilowatt.runtime import StationRuntime


class RecordingPlugin(StationPlugin):
    def __init__(self):
        super().__init__()
        self.events = []
        self.initialized = False
        self.cleaned_up = False

    def hooks(self):
        return {
            PluginHook.AFTER_BOOT_NOTIFICATION: "on_boot",
            PluginHook.AFTER_START_TRANSACTION: "on_start",
            PluginHook.AFTER_STOP_TRANSACTION: "on_stop",
            PluginHook.AFTER_REMOTE_COMMAND: "on_command",
        }

    async def initialize(self, station):
        self.initialized = True

    async def cleanup(self, station):
        self.cleaned_up = True

    async def on_boot(self, context: PluginContext):
        self.events.append(("boot", context.result["status"]))

    async def on_start(self, context: PluginContext):
        self.events.append(("start", context.event_data["transaction_id"]))

    async def on_stop(self, context: PluginContext):
        self.events.append(("stop", context.event_data["reason"]))

    async def on_command(self, context: PluginContext):
        self.events.append(("command", context.event_data["action"]))


class BrokenPlugin(StationPlugin):
    def hooks(self):
        return {PluginHook.AFTER_START_TRANSACTION: "explode"}

    async def explode(self, context: PluginContext):
        raise RuntimeError("plugin bug")

    async def initialize(self, station):
        raise RuntimeError("cannot initialize")


class UnregistrablePlugin(StationPlugin):
    def hooks(self):
        raise RuntimeError("no hooks today")


@pytest.fixture
async def station_with_plugins(station_config, temp_db, modbus_client, relay):
    async def build(*plugins):
        station = StationRuntime(
            station_config, temp_db, MeterBus(modbus_client), relay, plugins=list(plugins)
        )
        await station.setup()
        station.controller.boot_retry_interval = 0.01
        built.append(station)
        return station

    built = []
    yield build
    for station in built:
        await station.rpc.close()
        await station.shutdown()


async def connect(station) -> FakeWebSocket:
    websocket = FakeWebSocket()
    station.rpc.attach(websocket)
    await wait_for(station.controller.booted.is_set)
    return websocket


class TestPluginFramework:
    async def test_plugin_registration(self, station_with_plugins):
        plugin = RecordingPlugin()

        station = await station_with_plugins(plugin)

        assert station.controller.plugins == [plugin]
        assert PluginHook.AFTER_BOOT_NOTIFICATION in station.controller._plugin_hooks
        assert plugin.initialized

    async def test_plugin_hook_execution(self, station_with_plugins):
        plugin = RecordingPlugin()
        station = await station_with_plugins(plugin)
        websocket = await connect(station)

        await station.controller.sessions.start(1, "TAG1")
        await station.controller.sessions.stop(1)
        await websocket.call("ClearCache", {})
        await wait_for(lambda: ("command", "ClearCache") in plugin.events)

        assert plugin.events == [
            ("boot", "Accepted"),
            ("start", 42),
            ("stop", "Local"),
            ("command", "ClearCache"),
        ]

    async def test_failing_plugin_does_not_break_the_station(self, station_with_plugins):
        recording = RecordingPlugin()
        station = await station_with_plugins(BrokenPlugin(), UnregistrablePlugin(), recording)
        await connect(station)

        result = await station.controller.sessions.start(1, "TAG1")

        assert result.accepted
        assert ("start", 42) in recording.events
        assert recording.initialized

    async def test_cleanup_on_shutdown(self, station_with_plugins):
        plugin = RecordingPlugin()
        station = await station_with_plugins(plugin)

        await station.controller.shutdown()

        assert plugin.cleaned_up

    async def test_hook_without_plugins_is_a_no_op(self, runtime):
        await runtime.controller.execute_plugin_hooks(PluginHook.AFTER_HEARTBEAT, {})


class TestOrphanedTransactionPlugin:
    async def test_closes_recovered_transaction_after_boot(
        self, station_with_plugins, temp_db, modbus_client
    ):
        station = await station_with_plugins(OrphanedTransactionPlugin())
        state = station.controller.connectors[1]
        async with state.lock:
            await state.restore(
                PersistedConnector(
                    connector_id=1,
                    status="Charging",
                    availability="Operative",
                    transaction_id=77,
                    id_tag="TAG7",
                    meter_start_wh=100,
                )
            )
        modbus_client.set_energy(1, 640)

        websocket = await connect(station)

        await wait_for(lambda: state.status == ChargePointStatus.available)
        request = websocket.calls("StopTransaction")[0]
        assert request["transactionId"] == 77
        assert request["meterStop"] == 640
        assert request["reason"] == "PowerLoss"

    async def test_ignores_rejected_boot(self, station_with_plugins):
        station = await station_with_plugins(OrphanedTransactionPlugin())
        plugin = station.controller.plugins[0]

        await plugin.on_boot_accepted(
            PluginContext(station=station.controller, event_data={}, result={"status": "Rejected"})
        )

        assert station.controller.connectors[1].status == ChargePointStatus.available

    async def test_custom_reason(self, station_with_plugins, modbus_client):
        station = await station_with_plugins(OrphanedTransactionPlugin(reason="Reboot"))
        state = station.controller.connectors[2]
        async with state.lock:
            await state.restore(
                PersistedConnector(
                    2, "Charging", "Operative", transaction_id=5, id_tag="T", meter_start_wh=0
                )
            )

        websocket = await connect(station)

        await wait_for(lambda: len(websocket.calls("StopTransaction")) == 1)
        assert websocket.calls("StopTransaction")[0]["reason"] == "Reboot"
