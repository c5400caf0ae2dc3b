"""OCPP-J 1.6 client: call correlation and inbound dispatch over a WebSocket."""

import asyncio
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, is_dataclass
from datetime import UTC, datetime
from typing import Any

import websockets
from ocpp.charge_point import camel_to_snake_case, remove_nones, snake_to_camel_case
from ocpp.exceptions import OCPPError
from ocpp.messages import Call, CallError, CallResult, unpack, validate_payload
from websockets.asyncio.client import ClientConnection, connect

from .errors import CallErrorResponse, ConnectionClosed, RpcTimeout
from .logging_utils import log_error, log_ocpp_message, log_websocket_event

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]
LifecycleCallback = Callable[[], Awaitable[None]]
InboundObserver = Callable[[str, dict[str, Any], Any, float], Awaitable[None]]


def _action_name(action: Any) -> str:
    return getattr(action, "value", action)


def to_wire(payload: Any) -> dict[str, Any]:
    """Convert a payload dataclass or snake_case dict to a camelCase OCPP payload."""
    if payload is None:
        return {}
    if is_dataclass(payload):
        payload = asdict(payload)
    return snake_to_camel_case(remove_nones(payload))


@dataclass
class PendingCall:
    """An outbound call waiting for its CALLRESULT or CALLERROR."""

    message_id: str
    action: str
    sent_at: datetime
    responder: asyncio.Future


class OcppRpcClient:
    """
    Charge point side of an OCPP-J connection.

    Outbound calls are correlated through a table of pending calls keyed by message
    id; each call waits for its own reply or its timeout, whichever comes first.
    Replies that arrive after the call gave up are logged and dropped.

    Inbound calls are routed through an explicit table with one handler per action.
    Each inbound call runs in its own task so a handler may itself make outbound calls
    while the reader keeps consuming frames. A handler's optional ``after`` callback
    runs once the CALLRESULT has been written.

    This layer never reconnects on its own; the runtime owns the retry policy.
    """

    def __init__(
        self,
        url: str,
        identity: str,
        call_timeout: float = 30.0,
        ping_interval: float | None = 20.0,
        open_timeout: float = 10.0,
        subprotocol: str = "ocpp1.6",
        validate_inbound: bool = True,
    ):
        self.identity = identity
        self.url = f"{url.rstrip('/')}/{identity}"
        self.call_timeout = call_timeout
        self.ping_interval = ping_interval
        self.open_timeout = open_timeout
        self.subprotocol = subprotocol
        self.validate_inbound = validate_inbound

        self._handlers: dict[str, tuple[Handler, Handler | None]] = {}
        self._pending: dict[str, PendingCall] = {}
        self._message_ids = itertools.count(1)
        self._connection: ClientConnection | None = None
        self._reader: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._open_callbacks: list[LifecycleCallback] = []
        self._close_callbacks: list[LifecycleCallback] = []
        self._inbound_observers: list[InboundObserver] = []

    # Registration

    def handle(self, action: Any, handler: Handler, after: Handler | None = None) -> None:
        """Register the handler for an inbound action. Each action takes one handler."""
        name = _action_name(action)
        if name in self._handlers:
            raise ValueError(f"a handler for {name} is already registered")
        self._handlers[name] = (handler, after)

    def on_open(self, callback: LifecycleCallback) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: LifecycleCallback) -> None:
        self._close_callbacks.append(callback)

    def on_inbound(self, observer: InboundObserver) -> None:
        """Observe every handled inbound call: (action, payload, result, seconds)."""
        self._inbound_observers.append(observer)

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def pending(self) -> dict[str, PendingCall]:
        return dict(self._pending)

    # Connection lifecycle

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the WebSocket and start reading. Raises on handshake failure."""
        if self.connected:
            return
        connection = await connect(
            self.url,
            subprotocols=[self.subprotocol],
            ping_interval=self.ping_interval,
            open_timeout=self.open_timeout,
        )
        self.attach(connection)

    def attach(self, connection: ClientConnection) -> None:
        """Take ownership of an open connection."""
        self._connection = connection
        log_websocket_event(logger, "connect", station=self.identity, url=self.url)
        self._reader = asyncio.create_task(self._read_loop(connection), name="ocpp-reader")
        for callback in self._open_callbacks:
            self._spawn(self._run_callback(callback, "open"))

    async def wait_closed(self) -> None:
        """Return once the current connection has closed."""
        if self._reader is not None:
            await asyncio.shield(self._reader)

    async def close(self) -> None:
        connection = self._connection
        if connection is not None:
            await connection.close()
        await self.wait_closed()

    # Outbound

    async def call(
        self, action: Any, payload: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        """
        Send a CALL and wait for its reply.

        Args:
            action: OCPP action name
            payload: camelCase payload
            timeout: seconds to wait for the reply (defaults to ``call_timeout``)

        Returns:
            The camelCase CALLRESULT payload.

        Raises:
            ConnectionClosed: not connected, or the connection dropped while waiting
            RpcTimeout: no reply within ``timeout``
            CallErrorResponse: the central system answered with a CALLERROR
        """
        name = _action_name(action)
        connection = self._connection
        if connection is None:
            raise ConnectionClosed(f"{name}: not connected")

        timeout = self.call_timeout if timeout is None else timeout
        message_id = str(next(self._message_ids))
        responder = asyncio.get_running_loop().create_future()
        self._pending[message_id] = PendingCall(message_id, name, datetime.now(UTC), responder)
        message = Call(message_id, name, payload or {})

        try:
            log_ocpp_message(
                logger, "sent", self.identity, "CALL",
                message_id=message_id, action=name, payload=message.payload,
            )
            try:
                await connection.send(message.to_json())
            except websockets.exceptions.ConnectionClosed as e:
                raise ConnectionClosed(f"{name}: connection closed while sending") from e
            return await asyncio.wait_for(responder, timeout)
        except TimeoutError:
            logger.warning(
                f"{name} ({message_id}) got no reply within {timeout}s",
                extra={
                    "event_type": "rpc_timeout",
                    "event_data": {"action": name, "message_id": message_id, "timeout": timeout},
                },
            )
            raise RpcTimeout(f"{name} ({message_id}) timed out after {timeout}s") from None
        finally:
            self._pending.pop(message_id, None)

    async def request(self, payload: Any, timeout: float | None = None) -> dict[str, Any]:
        """Send an ``ocpp.v16.call`` dataclass and return the snake_case result."""
        result = await self.call(payload.__class__.__name__, to_wire(payload), timeout)
        return camel_to_snake_case(result)

    # Inbound

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_callback(self, callback: LifecycleCallback, kind: str) -> None:
        try:
            await callback()
        except Exception as e:
            log_error(
                logger, "callback_error", f"{kind} callback failed: {e}",
                station=self.identity, exc_info=e,
            )

    async def _read_loop(self, connection: ClientConnection) -> None:
        try:
            async for raw in connection:
                self._route(raw)
        except websockets.exceptions.ConnectionClosedError as e:
            log_websocket_event(
                logger, "error", station=self.identity, code=e.code, reason=e.reason
            )
        finally:
            if self._connection is connection:
                self._connection = None
            self._fail_pending()
            log_websocket_event(logger, "disconnect", station=self.identity)
            for callback in self._close_callbacks:
                await self._run_callback(callback, "close")

    def _route(self, raw: str | bytes) -> None:
        try:
            message = unpack(raw)
        except OCPPError as e:
            log_error(
                logger, "malformed_frame", f"Dropping malformed frame: {e}",
                station=self.identity, raw=raw if isinstance(raw, str) else repr(raw),
            )
            return

        if isinstance(message, Call):
            log_ocpp_message(
                logger, "received", self.identity, "CALL",
                message_id=message.unique_id, action=message.action, payload=message.payload,
            )
            self._spawn(self._dispatch(message))
        elif isinstance(message, CallResult):
            log_ocpp_message(
                logger, "received", self.identity, "CALLRESULT",
                message_id=message.unique_id, payload=message.payload,
            )
            self._resolve(message.unique_id, result=message.payload)
        else:
            log_ocpp_message(
                logger, "received", self.identity, "CALLERROR",
                message_id=message.unique_id,
                error_code=message.error_code,
                error_description=message.error_description,
                error_details=message.error_details,
            )
            self._resolve(
                message.unique_id,
                error=CallErrorResponse(
                    message.error_code, message.error_description, message.error_details
                ),
            )

    def _resolve(
        self,
        message_id: str,
        result: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None or pending.responder.done():
            logger.warning(
                f"Dropping reply for unknown or expired call {message_id}",
                extra={"event_type": "late_reply", "event_data": {"message_id": message_id}},
            )
            return
        if error is not None:
            pending.responder.set_exception(error)
        else:
            pending.responder.set_result(result or {})

    def _fail_pending(self) -> None:
        pending, self._pending = self._pending, {}
        for call in pending.values():
            if not call.responder.done():
                call.responder.set_exception(
                    ConnectionClosed(f"{call.action} ({call.message_id}): connection closed")
                )

    async def _dispatch(self, call: Call) -> None:
        started = time.monotonic()
        entry = self._handlers.get(call.action)
        if entry is None:
            await self._send_frame(CallError(call.unique_id, "NotImplemented", "", {}))
            return
        handler, after = entry

        if self.validate_inbound:
            try:
                await validate_payload(call, "1.6")
            except OCPPError as e:
                await self._send_frame(
                    CallError(call.unique_id, e.code, e.description, e.details or {})
                )
                return

        kwargs = camel_to_snake_case(call.payload)
        try:
            result = await handler(**kwargs)
        except Exception as e:
            log_error(
                logger, "handler_error", f"{call.action} handler failed: {e}",
                station=self.identity, action=call.action, message_id=call.unique_id, exc_info=e,
            )
            await self._send_frame(CallError(call.unique_id, "InternalError", str(e), {}))
            return

        await self._send_frame(CallResult(call.unique_id, to_wire(result), call.action))

        elapsed = time.monotonic() - started
        for observer in self._inbound_observers:
            try:
                await observer(call.action, kwargs, result, elapsed)
            except Exception as e:
                log_error(logger, "observer_error", f"Inbound observer failed: {e}", exc_info=e)

        if after is not None:
            try:
                await after(**kwargs)
            except Exception as e:
                log_error(
                    logger, "after_handler_error", f"{call.action} follow-up failed: {e}",
                    station=self.identity, action=call.action, exc_info=e,
                )

    async def _send_frame(self, message: CallResult | CallError) -> None:
        connection = self._connection
        message_type = "CALLRESULT" if isinstance(message, CallResult) else "CALLERROR"
        if connection is None:
            logger.warning(f"Cannot send {message_type} {message.unique_id}: not connected")
            return
        try:
            await connection.send(message.to_json())
        except websockets.exceptions.ConnectionClosed:
            logger.warning(f"Connection closed before {message_type} {message.unique_id} was sent")
            return
        if isinstance(message, CallResult):
            log_ocpp_message(
                logger, "sent", self.identity, message_type,
                message_id=message.unique_id, action=message.action, payload=message.payload,
            )
        else:
            log_ocpp_message(
                logger, "sent", self.identity, message_type,
                message_id=message.unique_id, error_code=message.error_code,
                error_description=message.error_description,
            )
