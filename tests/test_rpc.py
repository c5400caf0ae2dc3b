"""Tests for OCPP-J call correlation and inbound dispatch."""

import asyncio

import pytest
from doubles import CallErrorReply, FakeWebSocket, wait_for
from ocpp.v16 import call, call_result
from ocpp.v16.enums import ResetStatus

from kilowatt.errors import CallErrorResponse, ConnectionClosed, RpcTimeout
from kilowatt.rpc import OcppRpcClient, to_wire


def make_client(**kwargs) -> OcppRpcClient:
    return OcppRpcClient("ws://csms.test/ocpp/", "KW-TEST-1", call_timeout=0.2, **kwargs)


@pytest.fixture
async def connected():
    client = make_client()
    websocket = FakeWebSocket()
    client.attach(websocket)
    yield client, websocket
    await client.close()


class TestWire:
    def test_url_ends_with_identity(self):
        assert make_client().url == "ws://csms.test/ocpp/KW-TEST-1"

    def test_to_wire_drops_nones_and_camel_cases(self):
        payload = call.StartTransaction(
            connector_id=1, id_tag="TAG1", meter_start=10, timestamp="2026-01-01T00:00:00+00:00"
        )
        assert to_wire(payload) == {
            "connectorId": 1,
            "idTag": "TAG1",
            "meterStart": 10,
            "timestamp": "2026-01-01T00:00:00+00:00",
        }

    def test_to_wire_of_nothing(self):
        assert to_wire(None) == {}


class TestOutboundCalls:
    async def test_call_returns_result(self, connected):
        client, websocket = connected

        result = await client.call("Heartbeat", {})

        assert "currentTime" in result
        assert websocket.actions() == ["Heartbeat"]
        assert client.pending == {}

    async def test_request_uses_snake_case(self, connected):
        client, _ = connected

        result = await client.request(call.Authorize(id_tag="TAG1"))

        assert result == {"id_tag_info": {"status": "Accepted"}}

    async def test_timeout(self, connected):
        client, websocket = connected
        websocket.replies["Heartbeat"] = None

        with pytest.raises(RpcTimeout):
            await client.call("Heartbeat", {}, timeout=0.05)

        assert client.pending == {}

    async def test_late_reply_is_dropped(self, connected):
        client, websocket = connected
        websocket.replies["Heartbeat"] = None
        with pytest.raises(RpcTimeout):
            await client.call("Heartbeat", {}, timeout=0.05)

        message_id = websocket.sent[-1][1]
        websocket.push([3, message_id, {"currentTime": "late"}])

        # the connection keeps working
        assert await client.call("Authorize", {"idTag": "TAG1"}) == {
            "idTagInfo": {"status": "Accepted"}
        }

    async def test_call_error(self, connected):
        client, websocket = connected
        websocket.replies["Authorize"] = CallErrorReply("SecurityError", "not allowed")

        with pytest.raises(CallErrorResponse) as exc:
            await client.call("Authorize", {"idTag": "TAG1"})

        assert exc.value.error_code == "SecurityError"
        assert exc.value.description == "not allowed"

    async def test_replies_are_correlated_by_id(self, connected):
        client, websocket = connected
        websocket.replies["DataTransfer"] = None

        first = asyncio.create_task(client.call("DataTransfer", {"vendorId": "a"}))
        second = asyncio.create_task(client.call("DataTransfer", {"vendorId": "b"}))
        await wait_for(lambda: len(websocket.sent) == 2)
        first_id, second_id = websocket.sent[0][1], websocket.sent[1][1]

        websocket.push([3, second_id, {"status": "Rejected"}])
        websocket.push([3, first_id, {"status": "Accepted"}])

        assert await first == {"status": "Accepted"}
        assert await second == {"status": "Rejected"}

    async def test_not_connected(self):
        client = make_client()
        with pytest.raises(ConnectionClosed):
            await client.call("Heartbeat", {})

    async def test_disconnect_fails_pending_calls(self, connected):
        client, websocket = connected
        websocket.replies["Heartbeat"] = None

        pending = asyncio.create_task(client.call("Heartbeat", {}, timeout=5))
        await wait_for(lambda: bool(client.pending))
        await websocket.close()

        with pytest.raises(ConnectionClosed):
            await pending
        assert not client.connected

    async def test_malformed_frame_is_ignored(self, connected):
        client, websocket = connected

        websocket.push("this is not json")
        websocket.push([9, "x"])

        assert "currentTime" in await client.call("Heartbeat", {})


class TestInboundDispatch:
    async def test_handler_result_and_after_order(self):
        client = make_client()
        seen = []

        async def on_reset(type, **kwargs):
            seen.append(("on", type))
            return call_result.Reset(status=ResetStatus.accepted)

        async def after_reset(type, **kwargs):
            # the CALLRESULT is already on the wire
            seen.append(("after", websocket.reply_to("csms-1") is not None))

        client.handle("Reset", on_reset, after_reset)
        websocket = FakeWebSocket()
        client.attach(websocket)

        reply = await websocket.call("Reset", {"type": "Soft"})
        await wait_for(lambda: len(seen) == 2)

        assert reply == [3, "csms-1", {"status": "Accepted"}]
        assert seen == [("on", "Soft"), ("after", True)]
        await client.close()

    async def test_kwargs_are_snake_case(self):
        client = make_client()
        received = {}

        async def on_remote_start(**kwargs):
            received.update(kwargs)
            return call_result.RemoteStartTransaction(status="Accepted")

        client.handle("RemoteStartTransaction", on_remote_start)
        websocket = FakeWebSocket()
        client.attach(websocket)

        await websocket.call("RemoteStartTransaction", {"idTag": "TAG1", "connectorId": 2})

        assert received == {"id_tag": "TAG1", "connector_id": 2}
        await client.close()

    async def test_unknown_action(self, connected):
        _, websocket = connected

        reply = await websocket.call("ClearChargingProfile", {})

        assert reply[0] == 4
        assert reply[2] == "NotImplemented"

    async def test_invalid_payload(self):
        client = make_client()
        handler_calls = []

        async def on_reset(**kwargs):
            handler_calls.append(kwargs)
            return call_result.Reset(status=ResetStatus.accepted)

        client.handle("Reset", on_reset)
        websocket = FakeWebSocket()
        client.attach(websocket)

        reply = await websocket.call("Reset", {})

        assert reply[0] == 4
        assert handler_calls == []
        await client.close()

    async def test_handler_exception_becomes_internal_error(self):
        client = make_client()

        async def on_reset(**kwargs):
            raise RuntimeError("boom")

        client.handle("Reset", on_reset)
        websocket = FakeWebSocket()
        client.attach(websocket)

        reply = await websocket.call("Reset", {"type": "Hard"})

        assert reply[0] == 4
        assert reply[2] == "InternalError"
        await client.close()

    async def test_one_handler_per_action(self):
        client = make_client()

        async def handler(**kwargs):
            return None

        client.handle("Reset", handler)
        with pytest.raises(ValueError):
            client.handle("Reset", handler)
        assert client.actions == ["Reset"]

    async def test_handler_may_call_out(self):
        """An inbound handler can make its own outbound call while the reader runs."""
        client = make_client()

        async def on_trigger(**kwargs):
            await client.call("Heartbeat", {})
            return call_result.TriggerMessage(status="Accepted")

        client.handle("TriggerMessage", on_trigger)
        websocket = FakeWebSocket()
        client.attach(websocket)

        reply = await websocket.call("TriggerMessage", {"requestedMessage": "Heartbeat"})

        assert reply[2] == {"status": "Accepted"}
        assert websocket.actions() == ["Heartbeat"]
        await client.close()


class TestLifecycle:
    async def test_open_close_and_observer_callbacks(self):
        client = make_client()
        events = []

        async def opened():
            events.append("open")

        async def closed():
            events.append("close")

        async def observe(action, payload, result, seconds):
            events.append((action, payload, seconds >= 0))

        async def on_clear_cache(**kwargs):
            return call_result.ClearCache(status="Accepted")

        client.on_open(opened)
        client.on_close(closed)
        client.on_inbound(observe)
        client.handle("ClearCache", on_clear_cache)

        websocket = FakeWebSocket()
        client.attach(websocket)
        assert client.connected
        await websocket.call("ClearCache", {})
        await client.close()

        assert events == ["open", ("ClearCache", {}, True), "close"]
        assert not client.connected

    async def test_failing_callback_does_not_break_the_reader(self):
        client = make_client()

        async def broken():
            raise RuntimeError("callback failed")

        client.on_open(broken)
        websocket = FakeWebSocket()
        client.attach(websocket)

        assert "currentTime" in await client.call("Heartbeat", {})
        await client.close()
