"""Charging session orchestration: authorization, start, stop and meter reporting."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from ocpp.v16 import call
from ocpp.v16.enums import (
    AuthorizationStatus,
    AvailabilityType,
    ChargePointErrorCode,
    ChargePointStatus,
    Measurand,
    ReadingContext,
    Reason,
    UnitOfMeasure,
    ValueFormat,
)

from .authorization import LocalAuthorizationList
from .configuration import ConfigurationStore
from .connector import ConnectorState
from .errors import ModbusError, RelayError, RpcError, UnknownConnector, UnknownTransaction
from .logging_utils import log_error
from .models import ActiveTransaction, Reservation
from .plugins.base import PluginHook
from .rpc import OcppRpcClient

logger = logging.getLogger(__name__)

EnergyReader = Callable[[int], Awaitable[int]]
HookRunner = Callable[[PluginHook, dict[str, Any], Any], Awaitable[None]]


def _now() -> datetime:
    return datetime.now(UTC)


def _transaction_id(response: dict[str, Any]) -> int | None:
    value = response.get("transaction_id")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@dataclass
class SessionResult:
    """Outcome of a start or stop request."""

    accepted: bool
    connector_id: int
    transaction_id: int | None = None
    status: str | None = None


class SessionManager:
    """
    Starts and stops charging sessions against the central system.

    Every operation on a connector holds that connector's lock from the first
    transition to the last, so requests for one connector are applied one at a time.
    """

    def __init__(
        self,
        connectors: dict[int, ConnectorState],
        rpc: OcppRpcClient,
        authorization: LocalAuthorizationList,
        configuration: ConfigurationStore,
        energy_reader: EnergyReader | None = None,
        hooks: HookRunner | None = None,
    ):
        self.connectors = connectors
        self.rpc = rpc
        self.authorization = authorization
        self.configuration = configuration
        self.energy_reader = energy_reader
        self.hooks = hooks

    def state(self, connector_id: int) -> ConnectorState:
        try:
            return self.connectors[connector_id]
        except KeyError:
            raise UnknownConnector(connector_id) from None

    def find_transaction(self, transaction_id: int) -> ConnectorState:
        for state in self.connectors.values():
            transaction = state.connector.transaction
            if transaction is not None and transaction.transaction_id == transaction_id:
                return state
        raise UnknownTransaction(transaction_id)

    async def _hook(self, hook: PluginHook, data: dict[str, Any], result: Any = None) -> None:
        if self.hooks is not None:
            await self.hooks(hook, data, result)

    async def _read_energy(self, state: ConnectorState) -> int:
        """Fresh energy register value, or the last live reading if the meter is silent."""
        if self.energy_reader is not None:
            try:
                return await self.energy_reader(state.connector_id)
            except ModbusError as e:
                logger.warning(
                    f"Connector {state.connector_id}: meter read failed ({e}), "
                    "using last live reading"
                )
        return state.connector.live_reading.energy_wh

    # Authorization

    async def authorize(self, id_tag: str) -> bool:
        """
        Decide whether ``id_tag`` may start charging.

        Local list and cache entries answer first (a non-Accepted entry always
        refuses). Unknown tags are sent to the central system when it is reachable,
        otherwise AllowOfflineTxForUnknownId decides.
        """
        include_cache = self.configuration.get("AuthorizationCacheEnabled")
        entry = None
        if self.configuration.get("LocalAuthListEnabled") or include_cache:
            entry = await self.authorization.lookup(id_tag, include_cache=include_cache)
        if entry is not None and entry.is_cache and not include_cache:
            entry = None

        if entry is not None and (
            entry.status != AuthorizationStatus.accepted
            or self.configuration.get("LocalPreAuthorize")
            or not self.rpc.connected
        ):
            return entry.status == AuthorizationStatus.accepted

        try:
            response = await self.rpc.request(call.Authorize(id_tag=id_tag))
        except RpcError as e:
            allowed = entry is not None or self.configuration.get("AllowOfflineTxForUnknownId")
            logger.warning(f"Authorize for {id_tag} failed ({e}); offline decision: {allowed}")
            return allowed

        info = response.get("id_tag_info", {})
        if include_cache:
            await self.authorization.cache(id_tag, info)
        await self._hook(PluginHook.AFTER_AUTHORIZE, {"id_tag": id_tag}, response)
        return info.get("status") == AuthorizationStatus.accepted

    # Start

    async def start(self, connector_id: int, id_tag: str, authorize: bool = True) -> SessionResult:
        """
        Start a transaction on ``connector_id`` for ``id_tag``.

        Raises:
            UnknownConnector: no such connector
            InvalidTransition: the connector is neither Available nor Reserved for ``id_tag``
        """
        state = self.state(connector_id)
        if authorize and not await self.authorize(id_tag):
            logger.info(f"Start on connector {connector_id} refused: {id_tag} not authorized")
            return SessionResult(False, connector_id, status=AuthorizationStatus.invalid)

        async with state.lock:
            return await self._start_locked(state, id_tag)

    async def _start_locked(self, state: ConnectorState, id_tag: str) -> SessionResult:
        reservation = await state.begin(id_tag)
        try:
            return await self._request_start(state, id_tag, reservation)
        except Exception:
            # Preparing is only left through reject(), so never leave it behind
            if state.status == ChargePointStatus.preparing:
                await state.reject()
            raise

    async def _request_start(
        self, state: ConnectorState, id_tag: str, reservation: Reservation | None
    ) -> SessionResult:
        connector_id = state.connector_id
        meter_start = await self._read_energy(state)
        started_at = _now()

        request = call.StartTransaction(
            connector_id=connector_id,
            id_tag=id_tag,
            meter_start=meter_start,
            timestamp=started_at.isoformat(),
            reservation_id=reservation.reservation_id if reservation else None,
        )
        try:
            response = await self.rpc.request(request)
        except RpcError as e:
            log_error(
                logger, "start_transaction_failed",
                f"StartTransaction on connector {connector_id} failed: {e}",
                connector_id=connector_id,
            )
            await state.reject()
            return SessionResult(False, connector_id, status="Failed")

        info = response.get("id_tag_info", {})
        status = info.get("status")
        if self.configuration.get("AuthorizationCacheEnabled"):
            await self.authorization.cache(id_tag, info)
        if status != AuthorizationStatus.accepted:
            logger.info(f"Central system refused transaction on {connector_id}: {status}")
            await state.reject()
            return SessionResult(False, connector_id, status=status)

        transaction_id = _transaction_id(response)
        if transaction_id is None:
            log_error(
                logger, "start_transaction_failed",
                f"StartTransaction on connector {connector_id} accepted without a usable "
                f"transactionId: {response.get('transaction_id')!r}",
                connector_id=connector_id,
            )
            await state.reject()
            return SessionResult(False, connector_id, status="Rejected")

        transaction = ActiveTransaction(
            transaction_id=transaction_id,
            id_tag=id_tag,
            meter_start_wh=meter_start,
            started_at=started_at,
            reservation_id=reservation.reservation_id if reservation else None,
        )
        try:
            await state.accept(transaction)
        except RelayError as e:
            log_error(
                logger, "relay_error", f"Connector {connector_id}: relay did not close: {e}",
                connector_id=connector_id, exc_info=e,
            )
            await self._stop_locked(state, Reason.other)
            return SessionResult(False, connector_id, transaction.transaction_id, "RelayFailure")

        await self._hook(
            PluginHook.AFTER_START_TRANSACTION,
            {
                "connector_id": connector_id,
                "id_tag": id_tag,
                "meter_start": meter_start,
                "transaction_id": transaction.transaction_id,
            },
            response,
        )
        return SessionResult(True, connector_id, transaction.transaction_id, status)

    # Stop

    async def stop(self, connector_id: int, reason: str = Reason.local) -> SessionResult:
        """Stop the transaction on ``connector_id``; a no-op if none is running."""
        state = self.state(connector_id)
        async with state.lock:
            return await self._stop_locked(state, reason)

    async def stop_by_transaction(
        self, transaction_id: int, reason: str = Reason.remote
    ) -> SessionResult:
        state = self.find_transaction(transaction_id)
        async with state.lock:
            transaction = state.connector.transaction
            if transaction is None or transaction.transaction_id != transaction_id:
                # stopped while we waited for the lock
                return SessionResult(True, state.connector_id, transaction_id, "Stopped")
            return await self._stop_locked(state, reason)

    async def _stop_locked(self, state: ConnectorState, reason: str) -> SessionResult:
        connector = state.connector
        transaction = connector.transaction
        if transaction is None:
            return SessionResult(True, state.connector_id, status="NoTransaction")

        if connector.status == ChargePointStatus.finishing:
            if transaction.stop_pending:
                return SessionResult(
                    True, state.connector_id, transaction.transaction_id, "Stopping"
                )
            transaction.meter_stop_wh = max(
                await self._read_energy(state), transaction.meter_start_wh
            )
            transaction.stop_reason = reason
        else:
            meter_stop = max(await self._read_energy(state), transaction.meter_start_wh)
            await state.finish(meter_stop, reason)

        return await self._send_stop(state)

    async def _send_stop(self, state: ConnectorState) -> SessionResult:
        connector_id = state.connector_id
        transaction = state.connector.transaction
        request = call.StopTransaction(
            meter_stop=transaction.meter_stop_wh,
            timestamp=_now().isoformat(),
            transaction_id=transaction.transaction_id,
            reason=transaction.stop_reason,
            id_tag=transaction.id_tag or None,
        )
        try:
            response = await self.rpc.request(request)
        except RpcError as e:
            log_error(
                logger, "stop_transaction_failed",
                f"StopTransaction {transaction.transaction_id} not delivered: {e}",
                connector_id=connector_id, transaction_id=transaction.transaction_id,
            )
            return SessionResult(True, connector_id, transaction.transaction_id, "Pending")

        await state.complete()
        await self._hook(
            PluginHook.AFTER_STOP_TRANSACTION,
            {
                "connector_id": connector_id,
                "transaction_id": transaction.transaction_id,
                "meter_start": transaction.meter_start_wh,
                "meter_stop": transaction.meter_stop_wh,
                "reason": transaction.stop_reason,
            },
            response,
        )
        return SessionResult(True, connector_id, transaction.transaction_id, "Stopped")

    async def retry_pending_stops(self) -> int:
        """Resend StopTransaction for every stop the central system never acknowledged."""
        delivered = 0
        for state in self.connectors.values():
            async with state.lock:
                transaction = state.connector.transaction
                if transaction is None or not transaction.stop_pending:
                    continue
                if state.connector.status != ChargePointStatus.finishing:
                    continue
                result = await self._send_stop(state)
                delivered += result.status == "Stopped"
        return delivered

    async def close_recovered(self, reason: str = Reason.power_loss) -> list[int]:
        """Close transactions that were running when the station last went down."""
        closed = []
        for state in self.connectors.values():
            async with state.lock:
                transaction = state.connector.transaction
                if transaction is None or not transaction.recovered:
                    continue
                result = await self._stop_locked(state, reason)
                if result.status == "Stopped":
                    closed.append(transaction.transaction_id)
        return closed

    async def change_availability(
        self, connector_id: int, availability: AvailabilityType
    ) -> bool:
        """
        Make a connector (in)operative, stopping its transaction first.

        Returns False when the change is scheduled instead: the stop was not
        acknowledged yet and the connector picks up the new availability once it is.
        """
        state = self.state(connector_id)
        async with state.lock:
            if (
                availability == AvailabilityType.inoperative
                and state.connector.transaction is not None
            ):
                # recorded first so the acknowledged stop lands in Unavailable
                state.connector.availability = availability
                await self._stop_locked(state, Reason.other)
            await state.set_availability(availability)
            return state.connector.transaction is None

    # Faults and telemetry

    async def handle_fault(self, connector_id: int, error_code: ChargePointErrorCode) -> None:
        """Take a connector to Faulted, stopping its transaction first."""
        state = self.state(connector_id)
        async with state.lock:
            await state.fault(error_code)
            if state.connector.transaction is not None:
                await self._stop_locked(state, Reason.other)

    async def handle_telemetry_lost(self, connector_id: int) -> None:
        """A meter stopped answering: end its transaction and take it out of service."""
        state = self.state(connector_id)
        async with state.lock:
            if state.connector.transaction is not None:
                await self._stop_locked(state, Reason.other)
            await state.mark_telemetry_lost()

    async def handle_telemetry_restored(self, connector_id: int) -> None:
        state = self.state(connector_id)
        async with state.lock:
            await state.mark_telemetry_restored()

    # Meter values

    async def report_meter_values(
        self, connector_id: int, context: str = ReadingContext.sample_periodic
    ) -> bool:
        """
        Send MeterValues from the latest live reading.

        Skipped (returns False) when no transaction is charging on the connector.
        """
        state = self.state(connector_id)
        connector = state.connector
        transaction = connector.transaction
        if transaction is None or connector.status != ChargePointStatus.charging:
            return False

        reading = connector.live_reading
        sampled_value = [
            {
                "value": str(reading.energy_wh),
                "context": context,
                "format": ValueFormat.raw,
                "measurand": Measurand.energy_active_import_register,
                "unit": UnitOfMeasure.wh,
            }
        ]
        if reading.current_a is not None:
            sampled_value.append(
                {
                    "value": f"{reading.current_a:.2f}",
                    "context": context,
                    "format": ValueFormat.raw,
                    "measurand": Measurand.current_import,
                    "unit": UnitOfMeasure.a,
                }
            )
        if reading.power_w is not None:
            sampled_value.append(
                {
                    "value": f"{reading.power_w:.1f}",
                    "context": context,
                    "format": ValueFormat.raw,
                    "measurand": Measurand.power_active_import,
                    "unit": UnitOfMeasure.w,
                }
            )
        meter_value = [
            {
                "timestamp": (reading.taken_at or _now()).isoformat(),
                "sampled_value": sampled_value,
            }
        ]
        try:
            response = await self.rpc.request(
                call.MeterValues(
                    connector_id=connector_id,
                    meter_value=meter_value,
                    transaction_id=transaction.transaction_id,
                )
            )
        except RpcError as e:
            logger.warning(f"MeterValues for connector {connector_id} not delivered: {e}")
            return False

        await self._hook(
            PluginHook.AFTER_METER_VALUES,
            {
                "connector_id": connector_id,
                "transaction_id": transaction.transaction_id,
                "meter_start": transaction.meter_start_wh,
                "meter_value": meter_value,
            },
            response,
        )
        return True
