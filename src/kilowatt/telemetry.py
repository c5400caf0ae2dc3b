"""Meter polling with per-connector circuit breaking."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from ocpp.v16.enums import ChargePointStatus, Reason

from .circuit_breaker import CircuitBreaker
from .config import ConnectorConfig, TelemetryConfig
from .configuration import ConfigurationStore
from .connector import ConnectorState
from .errors import ModbusError
from .hardware import MeterBus
from .logging_utils import log_error
from .models import MeterSample
from .plugins.base import PluginHook
from .session import SessionManager

logger = logging.getLogger(__name__)

HookRunner = Callable[[PluginHook, dict[str, Any], Any], Awaitable[None]]


class TelemetryPoller:
    """
    Reads every connector's meter once per tick.

    Reads go through the shared MeterBus one at a time, each bounded by the read
    timeout. A connector whose meter fails ``failure_threshold`` times in a row is
    taken out of service and skipped for the disable window, so one dead meter costs
    the other connectors at most one timeout per window.

    Follow-up work that talks to the central system (stopping a transaction, sending
    MeterValues) runs in background tasks so the poll loop never waits on the network.
    """

    def __init__(
        self,
        bus: MeterBus,
        connectors: dict[int, ConnectorState],
        connector_configs: list[ConnectorConfig],
        config: TelemetryConfig,
        sessions: SessionManager,
        configuration: ConfigurationStore,
        hooks: HookRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bus = bus
        self.connectors = connectors
        self.connector_configs = {c.id: c for c in connector_configs}
        self.config = config
        self.sessions = sessions
        self.configuration = configuration
        self.hooks = hooks
        self._clock = clock
        self.breakers = {
            connector_id: CircuitBreaker(config.failure_threshold, config.disable_window, clock)
            for connector_id in self.connector_configs
        }
        self._last_report: dict[int, float] = {}
        self._zero_since: dict[int, float] = {}
        self._tasks: set[asyncio.Task] = set()

    def _spawn(self, coro: Awaitable[Any], name: str) -> None:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Awaitable[Any], name: str) -> None:
        try:
            await coro
        except Exception as e:
            log_error(logger, "telemetry_task_error", f"{name} failed: {e}", exc_info=e)

    async def _hook(self, hook: PluginHook, data: dict[str, Any]) -> None:
        if self.hooks is not None:
            await self.hooks(hook, data, None)

    async def drain(self) -> None:
        """Wait for background follow-up tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Polling

    async def poll(self) -> None:
        """One tick: sample every connector whose breaker allows it."""
        for connector_id in sorted(self.connector_configs):
            if not self.breakers[connector_id].allow():
                continue
            await self.poll_connector(connector_id)

    async def poll_connector(self, connector_id: int) -> MeterSample | None:
        config = self.connector_configs[connector_id]
        try:
            sample = await self.bus.read_sample(config, self.config.read_timeout)
        except ModbusError as e:
            await self._on_failure(connector_id, e)
            return None
        await self._on_success(connector_id, sample)
        return sample

    async def read_energy(self, connector_id: int) -> int:
        """Fresh energy register value in Wh, bypassing the tick schedule."""
        config = self.connector_configs[connector_id]
        sample = await self.bus.read_sample(config, self.config.read_timeout)
        self._update_reading(connector_id, sample)
        return sample.energy_wh

    async def read_serial_numbers(self) -> None:
        """Fill in meter serial numbers for connectors that declare the register."""
        for connector_id, config in self.connector_configs.items():
            try:
                serial = await self.bus.read_serial_number(config, self.config.read_timeout)
            except ModbusError as e:
                logger.warning(f"Connector {connector_id}: meter serial number unreadable: {e}")
                continue
            if serial:
                self.connectors[connector_id].connector.meter_serial_number = serial

    def _update_reading(self, connector_id: int, sample: MeterSample) -> None:
        reading = self.connectors[connector_id].connector.live_reading
        reading.energy_wh = sample.energy_wh
        reading.current_a = sample.current_a
        reading.power_w = sample.power_w
        reading.taken_at = datetime.now(UTC)
        reading.stale = False

    async def _on_success(self, connector_id: int, sample: MeterSample) -> None:
        self._update_reading(connector_id, sample)
        state = self.connectors[connector_id]
        if self.breakers[connector_id].record_success() or state.connector.telemetry_lost:
            logger.info(f"Connector {connector_id}: meter answering again")
            self._spawn(
                self.sessions.handle_telemetry_restored(connector_id),
                f"telemetry-restore-{connector_id}",
            )

        await self._hook(
            PluginHook.AFTER_TELEMETRY_SAMPLE,
            {
                "connector_id": connector_id,
                "energy_wh": sample.energy_wh,
                "current_a": sample.current_a,
                "power_w": sample.power_w,
            },
        )
        self._check_meter_values(state)
        self._check_zero_current(state, sample)

    async def _on_failure(self, connector_id: int, error: ModbusError) -> None:
        state = self.connectors[connector_id]
        state.connector.live_reading.stale = True
        breaker = self.breakers[connector_id]
        tripped = breaker.record_failure()
        logger.warning(
            f"Connector {connector_id}: meter read failed "
            f"({breaker.consecutive_failures} in a row): {error}",
            extra={
                "event_type": "telemetry_failure",
                "event_data": {
                    "connector_id": connector_id,
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "consecutive_failures": breaker.consecutive_failures,
                },
            },
        )
        await self._hook(
            PluginHook.AFTER_TELEMETRY_FAILURE,
            {
                "connector_id": connector_id,
                "error": str(error),
                "error_type": type(error).__name__,
                "consecutive_failures": breaker.consecutive_failures,
                "tripped": tripped,
            },
        )
        if tripped:
            log_error(
                logger, "telemetry_lost",
                f"Connector {connector_id}: meter disabled for {breaker.disable_window}s",
                connector_id=connector_id,
            )
            self._zero_since.pop(connector_id, None)
            self._spawn(
                self.sessions.handle_telemetry_lost(connector_id),
                f"telemetry-lost-{connector_id}",
            )

    # Transaction follow-ups

    def _check_meter_values(self, state: ConnectorState) -> None:
        connector_id = state.connector_id
        if state.status != ChargePointStatus.charging or state.connector.transaction is None:
            self._last_report.pop(connector_id, None)
            return
        interval = self.configuration.get("MeterValueSampleInterval")
        if not interval:
            return
        now = self._clock()
        last = self._last_report.setdefault(connector_id, now)
        if now - last >= interval:
            self._last_report[connector_id] = now
            self._spawn(
                self.sessions.report_meter_values(connector_id),
                f"meter-values-{connector_id}",
            )

    def _check_zero_current(self, state: ConnectorState, sample: MeterSample) -> None:
        connector_id = state.connector_id
        limit = self.config.zero_current_stop_seconds
        if (
            limit is None
            or sample.current_a is None
            or state.status != ChargePointStatus.charging
            or sample.current_a >= self.config.zero_current_threshold
        ):
            self._zero_since.pop(connector_id, None)
            return
        now = self._clock()
        since = self._zero_since.setdefault(connector_id, now)
        if now - since >= limit:
            del self._zero_since[connector_id]
            logger.info(f"Connector {connector_id}: no current for {limit}s, stopping")
            self._spawn(
                self.sessions.stop(connector_id, Reason.ev_disconnected),
                f"zero-current-stop-{connector_id}",
            )
