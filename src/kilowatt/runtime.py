"""Station runtime: wires the components together and keeps the connection alive."""

import asyncio
import logging

import websockets
from ocpp.v16.enums import ResetType

from .authorization import LocalAuthorizationList
from .config import StationConfig
from .configuration import ConfigurationStore
from .connector import ConnectorState
from .database import Database
from .handlers import StationController
from .hardware import MeterBus, RelayActuator
from .logging_utils import log_websocket_event
from .maintenance import DiagnosticsUploader, FirmwareInstaller
from .models import Connector
from .plugins.base import StationPlugin
from .repositories import ConfigurationRepository, ConnectorStateRepository, LocalAuthListRepository
from .reservations import ReservationRegistry
from .rpc import OcppRpcClient
from .session import SessionManager
from .telemetry import TelemetryPoller
from .ticker import Ticker

logger = logging.getLogger(__name__)


class StationRuntime:
    """
    Owns every long-lived piece of the station.

    The runtime connects to the central system and reconnects with exponential
    backoff whenever the connection drops; the RPC client itself never retries.
    A soft reset closes the connection so the station reconnects and boots again. A
    hard reset stops the runtime and leaves the restart to the process supervisor.
    """

    def __init__(
        self,
        config: StationConfig,
        db: Database,
        bus: MeterBus,
        relay: RelayActuator,
        plugins: list[StationPlugin] | None = None,
        firmware_installer: FirmwareInstaller | None = None,
        diagnostics_uploader: DiagnosticsUploader | None = None,
    ):
        self.config = config
        self.db = db
        self.bus = bus
        self.relay = relay
        self.plugins = plugins or []
        self.firmware_installer = firmware_installer
        self.diagnostics_uploader = diagnostics_uploader

        self.rpc = OcppRpcClient(
            config.central_system_url,
            config.station_name,
            call_timeout=config.rpc.call_timeout,
            ping_interval=config.rpc.ping_interval,
            open_timeout=config.rpc.open_timeout,
        )
        self.controller: StationController | None = None
        self.poller: TelemetryPoller | None = None
        self.tickers: list[Ticker] = []
        self.reset_type: ResetType | None = None
        self._stopping = asyncio.Event()

    async def setup(self) -> StationController:
        """Open the database, restore state and build the controller."""
        conn = await self.db.connect()
        await self.db.initialize_schema()

        configuration = ConfigurationStore(
            ConfigurationRepository(conn),
            overrides={
                **self.config.configuration_defaults,
                "NumberOfConnectors": str(len(self.config.connectors)),
                "ChargePointVendor": self.config.vendor,
                "ChargePointModel": self.config.model,
            },
        )
        await configuration.load()
        authorization = LocalAuthorizationList(LocalAuthListRepository(conn))
        connector_repo = ConnectorStateRepository(conn)

        connectors = {
            c.id: ConnectorState(Connector(c.id), self.relay, c.relay_path)
            for c in self.config.connectors
        }
        sessions = SessionManager(connectors, self.rpc, authorization, configuration)
        reservations = ReservationRegistry(connectors)
        self.controller = StationController(
            self.config,
            self.rpc,
            connectors,
            sessions,
            reservations,
            authorization,
            configuration,
            connector_repo=connector_repo,
            plugins=self.plugins,
            firmware_installer=self.firmware_installer,
            diagnostics_uploader=self.diagnostics_uploader,
            reset_handler=self.reset,
        )
        self.poller = TelemetryPoller(
            self.bus,
            connectors,
            self.config.connectors,
            self.config.telemetry,
            sessions,
            configuration,
            hooks=self.controller.execute_plugin_hooks,
        )
        sessions.energy_reader = self.poller.read_energy

        await self.controller.restore(await connector_repo.load())
        await self.controller.initialize_plugins()

        self.tickers = [
            Ticker(
                "telemetry", self.config.telemetry.interval, self.poller.poll, run_immediately=True
            ),
            Ticker(
                "reservation-sweep",
                self.config.reservation_sweep_interval,
                self.controller.sweep_reservations,
            ),
        ]
        return self.controller

    async def run(self) -> ResetType | None:
        """Run until stopped or hard reset. Returns the reset type that ended the run."""
        if self.controller is None:
            await self.setup()
        await self.poller.read_serial_numbers()
        for ticker in self.tickers:
            ticker.start()

        try:
            await self._connection_loop()
        finally:
            await self.shutdown()
        return self.reset_type

    async def _connection_loop(self) -> None:
        initial = self.config.rpc.reconnect_initial
        delay = initial
        while not self._stopping.is_set():
            try:
                await self.rpc.connect()
            except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
                log_websocket_event(
                    logger, "connect_failed", station=self.config.station_name,
                    error=str(e), retry_in=delay,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self.config.rpc.reconnect_max)
                continue

            delay = initial
            await self.rpc.wait_closed()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), seconds)
        except TimeoutError:
            pass

    async def reset(self, reset_type: ResetType) -> None:
        self.reset_type = reset_type
        if reset_type == ResetType.hard:
            await self.stop()
        else:
            logger.info("Soft reset: reconnecting")
            await self.rpc.close()

    async def stop(self) -> None:
        self._stopping.set()
        await self.rpc.close()

    async def shutdown(self) -> None:
        """Stop background work and release the bus and the database."""
        for ticker in self.tickers:
            await ticker.stop()
        if self.poller is not None:
            await self.poller.cancel()
        if self.controller is not None:
            await self.controller.shutdown()
        self.bus.close()
        await self.db.disconnect()
        logger.info(
            "Station stopped",
            extra={
                "event_type": "system_shutdown",
                "event_data": {
                    "station": self.config.station_name,
                    "reset": self.reset_type.value if self.reset_type else None,
                },
            },
        )
