"""OCPP 1.6 station controller: boot sequence, notifications and inbound commands."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import aiosqlite
from ocpp.routing import after, create_route_map, on
from ocpp.v16 import call, call_result
from ocpp.v16.enums import (
    Action,
    AvailabilityStatus,
    AvailabilityType,
    CancelReservationStatus,
    ChargePointErrorCode,
    ChargePointStatus,
    ClearCacheStatus,
    DataTransferStatus,
    DiagnosticsStatus,
    FirmwareStatus,
    MessageTrigger,
    ReadingContext,
    Reason,
    RegistrationStatus,
    RemoteStartStopStatus,
    ReservationStatus,
    ResetStatus,
    ResetType,
    TriggerMessageStatus,
    UnlockStatus,
    UpdateStatus,
    UpdateType,
)

from ..authorization import LocalAuthorizationList, entry_from_id_tag_info, id_tag_info
from ..config import StationConfig
from ..configuration import ConfigurationStore
from ..connector import ConnectorState
from ..errors import (
    ConnectionClosed,
    InvalidTransition,
    RpcError,
    UnknownConnector,
    UnknownTransaction,
)
from ..logging_utils import log_error
from ..maintenance import DiagnosticsUploader, FirmwareInstaller, update_firmware, upload_diagnostics
from ..models import Connector, PersistedConnector
from ..plugins.base import PluginContext, PluginHook, StationPlugin
from ..repositories import ConnectorStateRepository
from ..reservations import ReservationRegistry
from ..rpc import OcppRpcClient
from ..session import SessionManager
from ..ticker import Ticker

logger = logging.getLogger(__name__)

ResetHandler = Callable[[ResetType], Awaitable[None]]

DEFAULT_HEARTBEAT_INTERVAL = 60

_OCCUPIED = (
    ChargePointStatus.preparing,
    ChargePointStatus.charging,
    ChargePointStatus.suspended_ev,
    ChargePointStatus.suspended_evse,
    ChargePointStatus.finishing,
    ChargePointStatus.reserved,
)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class StationController:
    """
    Charge point side of the OCPP conversation.

    Inbound handlers are declared with ``ocpp.routing.on``/``after`` and registered
    into the RPC client's handler table. Every handler answers in its action's own
    response vocabulary; domain errors (unknown connector, invalid transition) become
    Rejected/Occupied style statuses here instead of protocol errors.

    Outbound StatusNotifications go through one queue drained by a single task, so
    the central system sees status changes in the order they happened. A failed
    notification is logged and dropped; the next boot resends every status.

    Supports a plugin system for extending behavior at various lifecycle hooks.
    """

    def __init__(
        self,
        config: StationConfig,
        rpc: OcppRpcClient,
        connectors: dict[int, ConnectorState],
        sessions: SessionManager,
        reservations: ReservationRegistry,
        authorization: LocalAuthorizationList,
        configuration: ConfigurationStore,
        connector_repo: ConnectorStateRepository | None = None,
        plugins: list[StationPlugin] | None = None,
        firmware_installer: FirmwareInstaller | None = None,
        diagnostics_uploader: DiagnosticsUploader | None = None,
        reset_handler: ResetHandler | None = None,
        boot_retry_interval: float = 30.0,
    ):
        self.config = config
        self.id = config.station_name
        self.rpc = rpc
        self.connectors = connectors
        self.sessions = sessions
        self.reservations = reservations
        self.authorization = authorization
        self.configuration = configuration
        self.connector_repo = connector_repo
        self.firmware_installer = firmware_installer
        self.diagnostics_uploader = diagnostics_uploader
        self.reset_handler = reset_handler
        self.boot_retry_interval = boot_retry_interval

        self.availability = AvailabilityType.operative
        self.registration_status: RegistrationStatus | None = None
        self.booted = asyncio.Event()
        self.heartbeat_interval = DEFAULT_HEARTBEAT_INTERVAL
        self.last_heartbeat_at: datetime | None = None
        self.firmware_status = FirmwareStatus.idle
        self.diagnostics_status = DiagnosticsStatus.idle
        self._diagnostics_file: str | None = None

        self._status_queue: asyncio.Queue = asyncio.Queue()
        self._status_worker: asyncio.Task | None = None
        self.heartbeat = Ticker("heartbeat", DEFAULT_HEARTBEAT_INTERVAL, self._heartbeat_tick)
        self._boot_task: asyncio.Task | None = None

        # Initialize plugin system
        self.plugins: list[StationPlugin] = plugins or []
        self._plugin_hooks: dict[PluginHook, list[tuple[StationPlugin, str]]] = {}
        self._register_plugins()

        for state in connectors.values():
            state.listener = self._on_connector_change
        sessions.hooks = self.execute_plugin_hooks
        configuration.subscribe("HeartbeatInterval", self._on_heartbeat_interval)

        self._register_handlers()
        rpc.on_open(self.on_connect)
        rpc.on_close(self.on_disconnect)
        rpc.on_inbound(self._on_inbound)

    def _register_handlers(self) -> None:
        for action, route in create_route_map(self).items():
            self.rpc.handle(action, route["_on_action"], route.get("_after_action"))

    # Startup and persistence

    async def restore(self, records: dict[int, PersistedConnector]) -> None:
        """Rebuild connector and station state from the last run."""
        station = records.get(0)
        if station is not None:
            self.availability = AvailabilityType(station.availability)
        for connector_id, state in self.connectors.items():
            record = records.get(connector_id)
            if record is not None:
                async with state.lock:
                    await state.restore(record)
            elif self.availability == AvailabilityType.inoperative:
                async with state.lock:
                    await state.set_availability(AvailabilityType.inoperative)

    def station_status(self) -> ChargePointStatus:
        if self.availability == AvailabilityType.inoperative:
            return ChargePointStatus.unavailable
        return ChargePointStatus.available

    async def _persist(self, record: PersistedConnector) -> None:
        if self.connector_repo is None:
            return
        try:
            await self.connector_repo.save(record)
        except aiosqlite.Error as e:
            log_error(
                logger, "persist_error",
                f"Could not persist connector {record.connector_id}: {e}",
                station=self.id, connector_id=record.connector_id, exc_info=e,
            )

    async def _on_connector_change(self, connector: Connector, previous: ChargePointStatus) -> None:
        await self._persist(self.connectors[connector.connector_id].snapshot())
        if connector.status != previous:
            self.enqueue_status(connector.connector_id, connector.status, connector.error_code)

    # Connection lifecycle

    async def on_connect(self) -> None:
        """Boot with the central system each time the connection opens."""
        await self.execute_plugin_hooks(PluginHook.AFTER_CONNECT, {"url": self.rpc.url})
        self._boot_task = asyncio.current_task()
        try:
            await self.boot()
        finally:
            self._boot_task = None

    async def on_disconnect(self) -> None:
        self.booted.clear()
        self.registration_status = None
        if self._boot_task is not None:
            self._boot_task.cancel()
        await self._stop_background()
        self._status_queue = asyncio.Queue()
        await self.execute_plugin_hooks(PluginHook.AFTER_DISCONNECT, {"url": self.rpc.url})

    async def _stop_background(self) -> None:
        await self.heartbeat.stop()
        task, self._status_worker = self._status_worker, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def shutdown(self) -> None:
        await self._stop_background()
        for plugin in self.plugins:
            try:
                await plugin.cleanup(self)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_cleanup_error",
                    f"Error cleaning up plugin {plugin.__class__.__name__}: {e}",
                    station=self.id,
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )

    async def initialize_plugins(self) -> None:
        for plugin in self.plugins:
            try:
                await plugin.initialize(self)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_initialize_error",
                    f"Error initializing plugin {plugin.__class__.__name__}: {e}",
                    station=self.id,
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )

    # Boot and heartbeat

    def _boot_request(self) -> call.BootNotification:
        serials = [
            state.connector.meter_serial_number
            for state in self.connectors.values()
            if state.connector.meter_serial_number
        ]
        return call.BootNotification(
            charge_point_vendor=self.config.vendor,
            charge_point_model=self.config.model,
            charge_point_serial_number=self.config.station_name,
            firmware_version=self.config.firmware_version,
            iccid=self.config.iccid,
            imsi=self.config.imsi,
            meter_serial_number=serials[0] if serials else None,
        )

    async def send_boot_notification(self) -> dict[str, Any]:
        response = await self.rpc.request(self._boot_request())
        self.registration_status = response.get("status")
        await self.execute_plugin_hooks(
            PluginHook.AFTER_BOOT_NOTIFICATION,
            {"vendor": self.config.vendor, "model": self.config.model},
            response,
        )
        return response

    async def boot(self) -> None:
        """
        Send BootNotification until the central system accepts it.

        Nothing else is sent before acceptance. Once accepted the heartbeat starts,
        every connector's status is reported and stops that were never acknowledged
        are resent.
        """
        while True:
            try:
                response = await self.send_boot_notification()
            except ConnectionClosed:
                logger.info("Connection closed during boot")
                return
            except RpcError as e:
                logger.warning(f"BootNotification failed: {e}")
                await asyncio.sleep(self.boot_retry_interval)
                continue

            status = response.get("status")
            interval = response.get("interval") or 0
            if status == RegistrationStatus.accepted:
                break
            retry = interval or self.boot_retry_interval
            logger.info(f"BootNotification {status}; retrying in {retry}s")
            await asyncio.sleep(retry)

        self.heartbeat_interval = interval or self.configuration.get("HeartbeatInterval")
        if interval:
            await self.configuration.change("HeartbeatInterval", str(interval))
        logger.info(
            f"Boot accepted, heartbeat every {self.heartbeat_interval}s",
            extra={
                "event_type": "boot_accepted",
                "event_data": {
                    "station": self.id,
                    "interval": self.heartbeat_interval,
                    "current_time": response.get("current_time"),
                },
            },
        )
        self.booted.set()

        self._status_worker = asyncio.create_task(self._drain_statuses(), name="status-worker")
        self.enqueue_status(0, self.station_status(), ChargePointErrorCode.no_error)
        for connector_id, state in self.connectors.items():
            self.enqueue_status(connector_id, state.status, state.connector.error_code)
        self.heartbeat.interval = self.heartbeat_interval
        self.heartbeat.start()

        await self.sessions.retry_pending_stops()

    def _on_heartbeat_interval(self, interval: int) -> None:
        self.heartbeat_interval = interval or DEFAULT_HEARTBEAT_INTERVAL
        self.heartbeat.interval = self.heartbeat_interval

    async def _heartbeat_tick(self) -> None:
        try:
            await self.send_heartbeat()
        except RpcError as e:
            logger.warning(f"Heartbeat failed: {e}")

    async def send_heartbeat(self) -> dict[str, Any]:
        response = await self.rpc.request(call.Heartbeat())
        self.last_heartbeat_at = datetime.now(UTC)
        await self.execute_plugin_hooks(PluginHook.AFTER_HEARTBEAT, {}, response)
        return response

    # Status notifications

    def enqueue_status(
        self,
        connector_id: int,
        status: ChargePointStatus,
        error_code: ChargePointErrorCode = ChargePointErrorCode.no_error,
    ) -> None:
        self._status_queue.put_nowait(
            (connector_id, status, error_code, datetime.now(UTC).isoformat())
        )

    async def _drain_statuses(self) -> None:
        while True:
            connector_id, status, error_code, timestamp = await self._status_queue.get()
            await self.send_status_notification(connector_id, status, error_code, timestamp)

    async def send_status_notification(
        self,
        connector_id: int,
        status: ChargePointStatus,
        error_code: ChargePointErrorCode = ChargePointErrorCode.no_error,
        timestamp: str | None = None,
    ) -> bool:
        request = call.StatusNotification(
            connector_id=connector_id,
            error_code=error_code,
            status=status,
            timestamp=timestamp or datetime.now(UTC).isoformat(),
        )
        try:
            response = await self.rpc.request(request)
        except RpcError as e:
            logger.warning(f"StatusNotification {status} for connector {connector_id} failed: {e}")
            return False
        await self.execute_plugin_hooks(
            PluginHook.AFTER_STATUS_NOTIFICATION,
            {"connector_id": connector_id, "status": status, "error_code": error_code},
            response,
        )
        return True

    async def send_firmware_status(self, status: FirmwareStatus) -> None:
        self.firmware_status = status
        try:
            await self.rpc.request(call.FirmwareStatusNotification(status=status))
        except RpcError as e:
            logger.warning(f"FirmwareStatusNotification {status} failed: {e}")

    async def send_diagnostics_status(self, status: DiagnosticsStatus) -> None:
        self.diagnostics_status = status
        try:
            await self.rpc.request(call.DiagnosticsStatusNotification(status=status))
        except RpcError as e:
            logger.warning(f"DiagnosticsStatusNotification {status} failed: {e}")

    async def sweep_reservations(self) -> None:
        await self.reservations.sweep()

    # Inbound: authorization

    @on(Action.authorize)
    async def on_authorize(self, id_tag: str, **kwargs):
        entry = await self.authorization.lookup(
            id_tag, include_cache=self.configuration.get("AuthorizationCacheEnabled")
        )
        return call_result.Authorize(id_tag_info=id_tag_info(entry))

    @on(Action.send_local_list)
    async def on_send_local_list(
        self, list_version: int, update_type: str, local_authorization_list=None, **kwargs
    ):
        if not self.configuration.get("LocalAuthListEnabled"):
            return call_result.SendLocalList(status=UpdateStatus.not_supported)

        items = local_authorization_list or []
        try:
            entries = [
                entry_from_id_tag_info(item["id_tag"], item["id_tag_info"])
                for item in items
                if item.get("id_tag_info")
            ]
            removals = [item["id_tag"] for item in items if not item.get("id_tag_info")]
            if update_type == UpdateType.full:
                await self.authorization.replace(entries, list_version)
            else:
                if list_version <= await self.authorization.version():
                    return call_result.SendLocalList(status=UpdateStatus.version_mismatch)
                await self.authorization.merge(entries, removals, list_version)
        except (ValueError, aiosqlite.Error) as e:
            log_error(logger, "local_list_error", f"SendLocalList failed: {e}", station=self.id)
            return call_result.SendLocalList(status=UpdateStatus.failed)
        return call_result.SendLocalList(status=UpdateStatus.accepted)

    @on(Action.get_local_list_version)
    async def on_get_local_list_version(self, **kwargs):
        if not self.configuration.get("LocalAuthListEnabled"):
            return call_result.GetLocalListVersion(list_version=-1)
        return call_result.GetLocalListVersion(list_version=await self.authorization.version())

    @on(Action.clear_cache)
    async def on_clear_cache(self, **kwargs):
        await self.authorization.clear_cache()
        return call_result.ClearCache(status=ClearCacheStatus.accepted)

    # Inbound: transactions

    def _remote_start_connector(self, id_tag: str, connector_id: int | None) -> ConnectorState | None:
        if self.availability == AvailabilityType.inoperative:
            return None
        if connector_id is not None:
            state = self.connectors.get(connector_id)
            candidates = [state] if state is not None else []
        else:
            candidates = list(self.connectors.values())
        for state in candidates:
            connector = state.connector
            if connector.status == ChargePointStatus.available:
                return state
            if (
                connector.status == ChargePointStatus.reserved
                and connector.reservation is not None
                and connector.reservation.id_tag == id_tag
            ):
                return state
        return None

    @on(Action.remote_start_transaction)
    async def on_remote_start_transaction(self, id_tag: str, connector_id: int | None = None, **kwargs):
        state = self._remote_start_connector(id_tag, connector_id)
        if state is None:
            logger.info(f"RemoteStartTransaction for {id_tag} rejected: no usable connector")
            return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.rejected)
        if kwargs.get("charging_profile"):
            logger.info("Ignoring charging profile of RemoteStartTransaction")
        return call_result.RemoteStartTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_start_transaction)
    async def after_remote_start_transaction(
        self, id_tag: str, connector_id: int | None = None, **kwargs
    ):
        state = self._remote_start_connector(id_tag, connector_id)
        if state is None:
            logger.warning(f"Connector for remote start of {id_tag} was taken meanwhile")
            return
        try:
            await self.sessions.start(
                state.connector_id,
                id_tag,
                authorize=self.configuration.get("AuthorizeRemoteTxRequests"),
            )
        except InvalidTransition as e:
            logger.warning(f"Remote start of {id_tag} no longer applies: {e}")

    @on(Action.remote_stop_transaction)
    async def on_remote_stop_transaction(self, transaction_id: int, **kwargs):
        try:
            self.sessions.find_transaction(transaction_id)
        except UnknownTransaction:
            return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.rejected)
        return call_result.RemoteStopTransaction(status=RemoteStartStopStatus.accepted)

    @after(Action.remote_stop_transaction)
    async def after_remote_stop_transaction(self, transaction_id: int, **kwargs):
        try:
            await self.sessions.stop_by_transaction(transaction_id, Reason.remote)
        except UnknownTransaction:
            logger.info(f"Transaction {transaction_id} already stopped")

    @on(Action.unlock_connector)
    async def on_unlock_connector(self, connector_id: int, **kwargs):
        if connector_id not in self.connectors:
            return call_result.UnlockConnector(status=UnlockStatus.unlock_failed)
        return call_result.UnlockConnector(status=UnlockStatus.unlocked)

    @after(Action.unlock_connector)
    async def after_unlock_connector(self, connector_id: int, **kwargs):
        if connector_id not in self.connectors:
            return
        await self.sessions.stop(connector_id, Reason.unlock_command)

    # Inbound: availability and configuration

    @on(Action.change_availability)
    async def on_change_availability(self, connector_id: int, type: str, **kwargs):
        availability = AvailabilityType(type)
        if connector_id == 0:
            previous, self.availability = self.availability, availability
            await self._persist(
                PersistedConnector(0, self.station_status().value, availability.value)
            )
            if previous != availability:
                self.enqueue_status(0, self.station_status())
            targets = list(self.connectors)
        elif connector_id in self.connectors:
            targets = [connector_id]
        else:
            return call_result.ChangeAvailability(status=AvailabilityStatus.rejected)

        scheduled = False
        for target in targets:
            if not await self.sessions.change_availability(target, availability):
                scheduled = True
        status = AvailabilityStatus.scheduled if scheduled else AvailabilityStatus.accepted
        return call_result.ChangeAvailability(status=status)

    @on(Action.change_configuration)
    async def on_change_configuration(self, key: str, value: str, **kwargs):
        status = await self.configuration.change(key, value)
        return call_result.ChangeConfiguration(status=status)

    @on(Action.get_configuration)
    async def on_get_configuration(self, key: list[str] | None = None, **kwargs):
        known, unknown = self.configuration.entries(key)
        return call_result.GetConfiguration(configuration_key=known, unknown_key=unknown or None)

    # Inbound: reservations

    @on(Action.reserve_now)
    async def on_reserve_now(
        self,
        connector_id: int,
        expiry_date: str,
        id_tag: str,
        reservation_id: int,
        parent_id_tag: str | None = None,
        **kwargs,
    ):
        state = self.connectors.get(connector_id)
        if state is None:
            return call_result.ReserveNow(status=ReservationStatus.rejected)
        try:
            expiry = _parse_timestamp(expiry_date)
        except ValueError:
            return call_result.ReserveNow(status=ReservationStatus.rejected)
        if expiry <= datetime.now(UTC):
            return call_result.ReserveNow(status=ReservationStatus.rejected)

        status = state.status
        if status == ChargePointStatus.faulted:
            return call_result.ReserveNow(status=ReservationStatus.faulted)
        if status == ChargePointStatus.unavailable:
            return call_result.ReserveNow(status=ReservationStatus.unavailable)
        try:
            await self.reservations.reserve(
                reservation_id, connector_id, id_tag, expiry, parent_id_tag
            )
        except InvalidTransition:
            if status in _OCCUPIED:
                return call_result.ReserveNow(status=ReservationStatus.occupied)
            return call_result.ReserveNow(status=ReservationStatus.rejected)
        except UnknownConnector:
            return call_result.ReserveNow(status=ReservationStatus.rejected)
        return call_result.ReserveNow(status=ReservationStatus.accepted)

    @on(Action.cancel_reservation)
    async def on_cancel_reservation(self, reservation_id: int, **kwargs):
        if await self.reservations.cancel(reservation_id):
            return call_result.CancelReservation(status=CancelReservationStatus.accepted)
        return call_result.CancelReservation(status=CancelReservationStatus.rejected)

    # Inbound: reset and triggers

    @on(Action.reset)
    async def on_reset(self, type: str, **kwargs):
        return call_result.Reset(status=ResetStatus.accepted)

    @after(Action.reset)
    async def after_reset(self, type: str, **kwargs):
        reset_type = ResetType(type)
        reason = Reason.hard_reset if reset_type == ResetType.hard else Reason.soft_reset
        logger.info(f"{reset_type.value} reset requested")
        for connector_id in self.connectors:
            await self.sessions.stop(connector_id, reason)
        for state in self.connectors.values():
            async with state.lock:
                await state.clear_fault()
        if self.reset_handler is not None:
            await self.reset_handler(reset_type)

    def _trigger_applies(self, requested_message: str, connector_id: int | None) -> bool:
        if connector_id is not None and connector_id != 0 and connector_id not in self.connectors:
            return False
        return requested_message in {m.value for m in MessageTrigger}

    @on(Action.trigger_message)
    async def on_trigger_message(self, requested_message: str, connector_id: int | None = None, **kwargs):
        if requested_message not in {m.value for m in MessageTrigger}:
            logger.info(f"TriggerMessage for {requested_message} not implemented")
            return call_result.TriggerMessage(status=TriggerMessageStatus.not_implemented)
        if not self._trigger_applies(requested_message, connector_id):
            return call_result.TriggerMessage(status=TriggerMessageStatus.rejected)
        return call_result.TriggerMessage(status=TriggerMessageStatus.accepted)

    @after(Action.trigger_message)
    async def after_trigger_message(
        self, requested_message: str, connector_id: int | None = None, **kwargs
    ):
        if not self._trigger_applies(requested_message, connector_id):
            return
        trigger = MessageTrigger(requested_message)
        if trigger == MessageTrigger.boot_notification:
            await self.send_boot_notification()
        elif trigger == MessageTrigger.heartbeat:
            await self.send_heartbeat()
        elif trigger == MessageTrigger.status_notification:
            targets = [connector_id] if connector_id is not None else [0, *self.connectors]
            for target in targets:
                if target == 0:
                    self.enqueue_status(0, self.station_status())
                else:
                    state = self.connectors[target]
                    self.enqueue_status(target, state.status, state.connector.error_code)
        elif trigger == MessageTrigger.meter_values:
            targets = [connector_id] if connector_id else list(self.connectors)
            for target in targets:
                await self.sessions.report_meter_values(target, ReadingContext.trigger)
        elif trigger == MessageTrigger.firmware_status_notification:
            await self.send_firmware_status(self.firmware_status)
        elif trigger == MessageTrigger.diagnostics_status_notification:
            await self.send_diagnostics_status(self.diagnostics_status)

    # Inbound: maintenance

    @on(Action.update_firmware)
    async def on_update_firmware(self, location: str, retrieve_date: str, **kwargs):
        return call_result.UpdateFirmware()

    @after(Action.update_firmware)
    async def after_update_firmware(self, location: str, retrieve_date: str, **kwargs):
        await update_firmware(
            self.firmware_installer,
            location,
            self.send_firmware_status,
            retrieve_date=_parse_timestamp(retrieve_date),
            retries=kwargs.get("retries", 0),
            retry_interval=kwargs.get("retry_interval", 60),
        )

    @on(Action.get_diagnostics)
    async def on_get_diagnostics(self, location: str, **kwargs):
        self._diagnostics_file = None
        if self.diagnostics_uploader is None:
            return call_result.GetDiagnostics()
        self._diagnostics_file = await self.diagnostics_uploader.collect()
        return call_result.GetDiagnostics(file_name=self._diagnostics_file)

    @after(Action.get_diagnostics)
    async def after_get_diagnostics(self, location: str, **kwargs):
        if self.diagnostics_uploader is None or self._diagnostics_file is None:
            return
        await upload_diagnostics(
            self.diagnostics_uploader, self._diagnostics_file, location,
            self.send_diagnostics_status,
        )

    @on(Action.data_transfer)
    async def on_data_transfer(self, vendor_id: str, message_id: str | None = None, data=None, **kwargs):
        if vendor_id != self.config.vendor:
            return call_result.DataTransfer(status=DataTransferStatus.unknown_vendor_id)
        if message_id != "LiveReadings":
            return call_result.DataTransfer(status=DataTransferStatus.unknown_message_id)
        readings = {
            str(connector_id): {
                "status": state.status.value,
                "energyWh": state.connector.live_reading.energy_wh,
                "currentA": state.connector.live_reading.current_a,
                "powerW": state.connector.live_reading.power_w,
                "stale": state.connector.live_reading.stale,
            }
            for connector_id, state in self.connectors.items()
        }
        return call_result.DataTransfer(
            status=DataTransferStatus.accepted, data=json.dumps(readings)
        )

    # Plugins

    async def _on_inbound(self, action: str, payload: dict, result: Any, seconds: float) -> None:
        await self.execute_plugin_hooks(
            PluginHook.AFTER_REMOTE_COMMAND,
            {"action": action, "payload": payload, "duration": seconds},
            result,
        )

    def _register_plugins(self):
        """Register all plugins and build hook mapping."""
        for plugin in self.plugins:
            try:
                hooks = plugin.hooks()
                for hook, method_name in hooks.items():
                    if hook not in self._plugin_hooks:
                        self._plugin_hooks[hook] = []
                    self._plugin_hooks[hook].append((plugin, method_name))
            except Exception as e:
                log_error(
                    logger,
                    "plugin_registration_error",
                    f"Failed to register plugin {plugin.__class__.__name__}: {e}",
                    station=self.id,
                    plugin=plugin.__class__.__name__,
                    exc_info=e,
                )

    async def execute_plugin_hooks(
        self,
        hook: PluginHook,
        event_data: dict,
        result=None,
    ):
        """
        Execute all registered plugin hooks for a given lifecycle point.

        Args:
            hook: The hook point to execute
            event_data: Event fields
            result: Response of the central system, if the event was a call
        """
        if hook not in self._plugin_hooks:
            return

        context = PluginContext(station=self, event_data=event_data, result=result)

        for plugin, method_name in self._plugin_hooks[hook]:
            try:
                method = getattr(plugin, method_name)
                await method(context)
            except Exception as e:
                log_error(
                    logger,
                    "plugin_execution_error",
                    f"Error executing {plugin.__class__.__name__}.{method_name} for hook {hook.value}: {e}",
                    station=self.id,
                    plugin=plugin.__class__.__name__,
                    hook=hook.value,
                    method=method_name,
                    exc_info=e,
                )
