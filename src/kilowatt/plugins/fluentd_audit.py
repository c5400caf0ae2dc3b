"""Plugin for structured audit logging to Fluentd."""

import asyncio
from typing import Any

from fluent import sender

from ..rpc import to_wire
from .base import PluginContext, PluginHook, StationPlugin


class FluentdAuditPlugin(StationPlugin):
    """
    Sends structured audit logs of station events to Fluentd.

    Every outbound OCPP call is logged with the request fields (``dir: send``) and the
    central system's answer (``dir: recv``); inbound commands, connection changes and
    meter failures are logged as single events.

    Example log entry:
    {
        "type": "ocpp",
        "station": "KW-0001",
        "dir": "send",
        "msg": {
            "connector_id": 1,
            "id_tag": "ABC",
            "meter_start": 0,
            "transaction_id": 42
        }
    }
    """

    def __init__(
        self,
        tag_prefix: str = "kilowatt",
        host: str = "localhost",
        port: int = 24224,
        timeout: float = 3.0,
        buffer_overflow_handler: Any = None,
        nanosecond_precision: bool = False,
    ):
        """
        Initialize the Fluentd audit plugin.

        Args:
            tag_prefix: Prefix for Fluentd tags (default: "kilowatt")
                       Tags will be: kilowatt.boot, kilowatt.transaction.start, etc.
            host: Fluentd server hostname (default: "localhost")
            port: Fluentd server port (default: 24224)
            timeout: Connection timeout in seconds (default: 3.0)
            buffer_overflow_handler: Handler for buffer overflow (default: None)
            nanosecond_precision: Use nanosecond precision timestamps (default: False)
        """
        super().__init__()
        self.tag_prefix = tag_prefix
        self.host = host
        self.port = port
        self.timeout = timeout
        self.buffer_overflow_handler = buffer_overflow_handler
        self.nanosecond_precision = nanosecond_precision
        self.sender = None

    def hooks(self) -> dict[PluginHook, str]:
        return {
            # Connection
            PluginHook.AFTER_CONNECT: "log_connect",
            PluginHook.AFTER_DISCONNECT: "log_disconnect",
            PluginHook.AFTER_BOOT_NOTIFICATION: "log_boot_notification",
            PluginHook.AFTER_HEARTBEAT: "log_heartbeat",
            # Status updates
            PluginHook.AFTER_STATUS_NOTIFICATION: "log_status_notification",
            # Transactions
            PluginHook.AFTER_AUTHORIZE: "log_authorize",
            PluginHook.AFTER_START_TRANSACTION: "log_start_transaction",
            PluginHook.AFTER_STOP_TRANSACTION: "log_stop_transaction",
            PluginHook.AFTER_METER_VALUES: "log_meter_values",
            # Everything else
            PluginHook.AFTER_REMOTE_COMMAND: "log_remote_command",
            PluginHook.AFTER_TELEMETRY_FAILURE: "log_telemetry_failure",
        }

    async def initialize(self, station):
        """Create the Fluentd sender when the station starts."""
        try:
            self.sender = sender.FluentSender(
                self.tag_prefix,
                host=self.host,
                port=self.port,
                timeout=self.timeout,
                buffer_overflow_handler=self.buffer_overflow_handler,
                nanosecond_precision=self.nanosecond_precision,
            )
        except Exception as e:
            self.logger.error(f"Failed to initialize Fluentd sender: {e}", exc_info=True)
            self.sender = None

    async def cleanup(self, station):
        if self.sender:
            try:
                await asyncio.to_thread(self.sender.close)
            except Exception as e:
                self.logger.error(f"Error closing Fluentd sender: {e}", exc_info=True)

    async def _send_event(self, tag: str, data: dict):
        """
        Send an event to Fluentd without blocking the event loop.

        Args:
            tag: Event tag (e.g., "boot", "transaction.start")
            data: Event data dictionary
        """
        if not self.sender:
            return

        try:
            await asyncio.to_thread(self.sender.emit, tag, data)
        except Exception as e:
            self.logger.error(f"Failed to send event to Fluentd (tag={tag}): {e}")

    def _event(self, context: PluginContext, direction: str, message: Any, kind: str = "ocpp") -> dict:
        return {
            "type": kind,
            "station": context.station.id,
            "dir": direction,
            "msg": message,
        }

    async def _log_call(self, tag: str, context: PluginContext):
        """Log an outbound call and, if there is one, the central system's answer."""
        await self._send_event(tag, self._event(context, "send", context.event_data))
        if context.result is not None:
            await self._send_event(
                f"{tag}.response", self._event(context, "recv", context.result)
            )

    async def log_connect(self, context: PluginContext):
        await self._send_event(
            "websocket", self._event(context, "out", {"event": "connect"}, kind="ws")
        )

    async def log_disconnect(self, context: PluginContext):
        await self._send_event(
            "websocket", self._event(context, "out", {"event": "disconnect"}, kind="ws")
        )

    async def log_boot_notification(self, context: PluginContext):
        await self._log_call("boot", context)

    async def log_heartbeat(self, context: PluginContext):
        await self._log_call("heartbeat", context)

    async def log_status_notification(self, context: PluginContext):
        await self._log_call("status", context)

    async def log_authorize(self, context: PluginContext):
        await self._log_call("authorize", context)

    async def log_start_transaction(self, context: PluginContext):
        await self._log_call("transaction.start", context)

    async def log_stop_transaction(self, context: PluginContext):
        await self._log_call("transaction.stop", context)

    async def log_meter_values(self, context: PluginContext):
        await self._log_call("meter", context)

    async def log_remote_command(self, context: PluginContext):
        """Log an inbound command and the answer the station gave."""
        data = self._event(context, "recv", context.event_data.get("payload"))
        data["action"] = context.event_data.get("action")
        if context.result is not None:
            data["response"] = to_wire(context.result)
        await self._send_event("command", data)

    async def log_telemetry_failure(self, context: PluginContext):
        await self._send_event(
            "telemetry.failure",
            self._event(context, "local", context.event_data, kind="modbus"),
        )
