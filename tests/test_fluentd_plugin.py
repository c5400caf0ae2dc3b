"""Tests for the Fluentd audit logging plugin."""

from unittest.mock import MagicMock, patch

import pytest
from doubles import FakeWebSocket, wait_for
from ocpp.v16 import call_result
from ocpp.v16.enums import ResetStatus

from kilowatt.hardware import MeterBus
from kilowatt.plugins import FluentdAuditPlugin
from kilowatt.plugins.base import PluginContext
from kilowatt.runtime import StationRuntime


def emitted(mock_sender) -> list[tuple[str, dict]]:
    return [c.args for c in mock_sender.emit.call_args_list]


def tags(mock_sender) -> list[str]:
    return [tag for tag, _ in emitted(mock_sender)]


@pytest.fixture
def mock_sender():
    with patch("fluent.sender.FluentSender") as mock_sender_class:
        sender = MagicMock()
        mock_sender_class.return_value = sender
        sender.factory = mock_sender_class
        yield sender


@pytest.fixture
async def audited_station(station_config, temp_db, modbus_client, relay, mock_sender):
    plugin = FluentdAuditPlugin(tag_prefix="kw_test", host="fluentd", port=24225)
    station = StationRuntime(
        station_config, temp_db, MeterBus(modbus_client), relay, plugins=[plugin]
    )
    await station.setup()
    yield station
    await station.rpc.close()
    await station.shutdown()


class TestFluentdAuditPlugin:
    """Test the Fluentd audit logging plugin."""

    async def test_plugin_initialization(self, audited_station, mock_sender):
        mock_sender.factory.assert_called_once_with(
            "kw_test",
            host="fluentd",
            port=24225,
            timeout=3.0,
            buffer_overflow_handler=None,
            nanosecond_precision=False,
        )
        assert audited_station.controller.plugins[0].sender is mock_sender

    async def test_sender_failure_disables_plugin(self):
        with patch("fluent.sender.FluentSender", side_effect=OSError("no route")):
            plugin = FluentdAuditPlugin()
            await plugin.initialize(MagicMock())

        assert plugin.sender is None
        # events are dropped quietly
        await plugin.log_heartbeat(
            PluginContext(station=MagicMock(id="KW-1"), event_data={}, result={})
        )

    async def test_boot_and_status_logging(self, audited_station, mock_sender):
        websocket = FakeWebSocket()
        audited_station.rpc.attach(websocket)
        await wait_for(audited_station.controller.booted.is_set)
        await wait_for(lambda: tags(mock_sender).count("status") >= 3)

        assert tags(mock_sender)[:3] == ["websocket", "boot", "boot.response"]
        _, boot = emitted(mock_sender)[1]
        assert boot["type"] == "ocpp"
        assert boot["station"] == "KW-TEST-1"
        assert boot["dir"] == "send"
        assert boot["msg"] == {"vendor": "Kilowatt", "model": "KW-AC"}
        _, response = emitted(mock_sender)[2]
        assert response["dir"] == "recv"
        assert response["msg"]["status"] == "Accepted"

    async def test_transaction_logging(self, audited_station, mock_sender, modbus_client):
        websocket = FakeWebSocket()
        audited_station.rpc.attach(websocket)
        await wait_for(audited_station.controller.booted.is_set)
        modbus_client.set_energy(1, 250)

        await audited_station.controller.sessions.start(1, "TAG1")
        await audited_station.controller.sessions.stop(1)

        events = dict(emitted(mock_sender))
        assert "authorize" in events
        assert events["transaction.start"]["msg"] == {
            "connector_id": 1,
            "id_tag": "TAG1",
            "meter_start": 250,
            "transaction_id": 42,
        }
        assert events["transaction.start.response"]["msg"]["transaction_id"] == 42
        assert events["transaction.stop"]["msg"]["reason"] == "Local"

    async def test_remote_command_logging(self):
        plugin = FluentdAuditPlugin()
        plugin.sender = MagicMock()

        await plugin.log_remote_command(
            PluginContext(
                station=MagicMock(id="KW-1"),
                event_data={"action": "Reset", "payload": {"type": "Soft"}, "duration": 0.01},
                result=call_result.Reset(status=ResetStatus.accepted),
            )
        )

        tag, data = plugin.sender.emit.call_args.args
        assert tag == "command"
        assert data["action"] == "Reset"
        assert data["msg"] == {"type": "Soft"}
        assert data["response"] == {"status": "Accepted"}

    async def test_telemetry_failure_logging(self):
        plugin = FluentdAuditPlugin()
        plugin.sender = MagicMock()

        await plugin.log_telemetry_failure(
            PluginContext(
                station=MagicMock(id="KW-1"),
                event_data={"connector_id": 2, "error_type": "ModbusTimeout", "tripped": True},
            )
        )

        tag, data = plugin.sender.emit.call_args.args
        assert tag == "telemetry.failure"
        assert data["type"] == "modbus"
        assert data["msg"]["tripped"] is True

    async def test_emit_failure_is_contained(self):
        plugin = FluentdAuditPlugin()
        plugin.sender = MagicMock()
        plugin.sender.emit.side_effect = OSError("broken pipe")

        await plugin.log_heartbeat(
            PluginContext(station=MagicMock(id="KW-1"), event_data={}, result={})
        )

    async def test_cleanup_closes_sender(self, audited_station, mock_sender):
        await audited_station.controller.shutdown()

        mock_sender.close.assert_called()
