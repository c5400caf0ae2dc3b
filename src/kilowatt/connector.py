"""Per-connector status machine."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ocpp.v16.enums import AvailabilityType, ChargePointErrorCode, ChargePointStatus

from .errors import InvalidTransition, RelayError
from .hardware.relay import RelayActuator
from .logging_utils import log_connector_event, log_error
from .models import ActiveTransaction, Connector, PersistedConnector, Reservation

logger = logging.getLogger(__name__)

Listener = Callable[[Connector, ChargePointStatus], Awaitable[None]]

_IN_TRANSACTION = (
    ChargePointStatus.charging,
    ChargePointStatus.suspended_ev,
    ChargePointStatus.suspended_evse,
    ChargePointStatus.finishing,
)


class ConnectorState:
    """
    Owns one connector record and applies status transitions to it.

    Every writer (session manager, reservation registry, telemetry poller, station
    controller) holds ``lock`` across a whole operation, so transition methods assume
    the caller already holds it. The relay is switched before the new status is
    published to the listener, and it is on exactly while the status is Charging.
    """

    def __init__(
        self,
        connector: Connector,
        relay: RelayActuator,
        relay_handle: str,
        listener: Listener | None = None,
    ):
        self.connector = connector
        self.relay = relay
        self.relay_handle = relay_handle
        self.listener = listener
        self.lock = asyncio.Lock()

    @property
    def connector_id(self) -> int:
        return self.connector.connector_id

    @property
    def status(self) -> ChargePointStatus:
        return self.connector.status

    @property
    def operative(self) -> bool:
        return self.connector.availability == AvailabilityType.operative

    def __repr__(self) -> str:
        return f"<ConnectorState {self.connector_id} {self.status.value}>"

    # Internals

    def _invalid(self, trigger: str) -> InvalidTransition:
        return InvalidTransition(self.connector_id, self.status.value, trigger)

    async def _switch_relay(self, on: bool) -> None:
        await self.relay.set_output(self.relay_handle, on)
        self.connector.relay_on = on

    async def _relay_off(self) -> bool:
        """Open the relay; a failure is logged and reported as False."""
        try:
            await self._switch_relay(False)
        except RelayError as e:
            log_error(
                logger, "relay_error", f"Connector {self.connector_id}: relay did not open: {e}",
                connector_id=self.connector_id, exc_info=e,
            )
            return False
        return True

    def _idle_status(self) -> ChargePointStatus:
        if self.connector.pending_fault is not None:
            return ChargePointStatus.faulted
        if not self.operative or self.connector.telemetry_lost:
            return ChargePointStatus.unavailable
        return ChargePointStatus.available

    def _idle_error_code(self, status: ChargePointStatus) -> ChargePointErrorCode:
        if status == ChargePointStatus.faulted:
            return self.connector.pending_fault or ChargePointErrorCode.other_error
        if status == ChargePointStatus.unavailable and self.connector.telemetry_lost:
            return ChargePointErrorCode.power_meter_failure
        return ChargePointErrorCode.no_error

    async def _enter(
        self,
        status: ChargePointStatus,
        error_code: ChargePointErrorCode = ChargePointErrorCode.no_error,
    ) -> None:
        connector = self.connector
        previous = connector.status
        connector.status = status
        connector.error_code = error_code
        if status == ChargePointStatus.faulted:
            connector.pending_fault = None
        log_connector_event(
            logger, self.connector_id, previous.value, status.value,
            error_code=error_code.value if error_code != ChargePointErrorCode.no_error else None,
        )
        await self._notify(previous)

    async def _enter_idle(self) -> None:
        status = self._idle_status()
        await self._enter(status, self._idle_error_code(status))

    async def _notify(self, previous: ChargePointStatus) -> None:
        if self.listener is not None:
            await self.listener(self.connector, previous)

    # Transaction lifecycle

    async def begin(self, id_tag: str) -> Reservation | None:
        """
        StartRequested: Available or Reserved (same id tag) -> Preparing.

        Returns the reservation consumed by this start, if any.
        """
        connector = self.connector
        reservation = None
        if connector.status == ChargePointStatus.reserved:
            if connector.reservation is None or connector.reservation.id_tag != id_tag:
                raise self._invalid("StartRequested")
            reservation, connector.reservation = connector.reservation, None
        elif connector.status != ChargePointStatus.available:
            raise self._invalid("StartRequested")

        connector.pending_id_tag = id_tag
        await self._enter(ChargePointStatus.preparing)
        return reservation

    async def accept(self, transaction: ActiveTransaction) -> None:
        """
        StartAccepted: Preparing -> Charging, relay on first.

        When the relay cannot be closed the transaction is kept, the connector moves
        to Finishing with a fault pending and RelayError propagates so the caller can
        stop the transaction.
        """
        connector = self.connector
        if connector.status != ChargePointStatus.preparing:
            raise self._invalid("StartAccepted")

        connector.pending_id_tag = None
        connector.transaction = transaction
        try:
            await self._switch_relay(True)
        except RelayError:
            connector.pending_fault = ChargePointErrorCode.other_error
            await self._relay_off()
            await self._enter(ChargePointStatus.finishing)
            raise
        await self._enter(ChargePointStatus.charging)

    async def reject(self) -> None:
        """StartRejected: Preparing -> Available."""
        if self.connector.status != ChargePointStatus.preparing:
            raise self._invalid("StartRejected")
        self.connector.pending_id_tag = None
        await self._enter_idle()

    async def finish(self, meter_stop_wh: int, reason: str) -> bool:
        """
        StopRequested: Charging -> Finishing, relay off first.

        Returns False without changing anything when no transaction is charging, so
        a repeated stop is harmless.
        """
        connector = self.connector
        if connector.transaction is None or connector.status == ChargePointStatus.finishing:
            return False
        if connector.status not in _IN_TRANSACTION:
            raise self._invalid("StopRequested")

        if not await self._relay_off():
            connector.pending_fault = ChargePointErrorCode.other_error
        connector.transaction.meter_stop_wh = meter_stop_wh
        connector.transaction.stop_reason = reason
        await self._enter(ChargePointStatus.finishing)
        return True

    async def complete(self) -> ActiveTransaction | None:
        """StopAcknowledged: Finishing -> Available (or Faulted/Unavailable)."""
        connector = self.connector
        if connector.status != ChargePointStatus.finishing:
            if connector.transaction is None:
                return None
            raise self._invalid("StopAcknowledged")

        if not await self._relay_off():
            connector.pending_fault = ChargePointErrorCode.other_error
        transaction, connector.transaction = connector.transaction, None
        await self._enter_idle()
        return transaction

    # Reservations

    async def reserve(self, reservation: Reservation) -> None:
        """Reserve: Available -> Reserved. Re-reserving with the same id updates it."""
        connector = self.connector
        if connector.status == ChargePointStatus.reserved:
            if (
                connector.reservation is None
                or connector.reservation.reservation_id != reservation.reservation_id
            ):
                raise self._invalid("Reserve")
            connector.reservation = reservation
            return
        if connector.status != ChargePointStatus.available:
            raise self._invalid("Reserve")

        connector.reservation = reservation
        await self._enter(ChargePointStatus.reserved)

    async def release_reservation(self, reservation_id: int) -> bool:
        """ReservationEnded: Reserved -> Available when the reservation matches."""
        connector = self.connector
        if (
            connector.status != ChargePointStatus.reserved
            or connector.reservation is None
            or connector.reservation.reservation_id != reservation_id
        ):
            return False
        connector.reservation = None
        await self._enter_idle()
        return True

    # Availability, faults and telemetry

    async def set_availability(self, availability: AvailabilityType) -> bool:
        """
        SetInoperative / SetOperative.

        The availability is always recorded. The status follows immediately when the
        connector is idle; a connector in a transaction picks it up on completion.
        Returns True if the status changed.
        """
        connector = self.connector
        previous_availability = connector.availability
        connector.availability = availability

        if availability == AvailabilityType.inoperative:
            if connector.status in (ChargePointStatus.available, ChargePointStatus.reserved):
                connector.reservation = None
                await self._enter_idle()
                return True
        elif (
            connector.status == ChargePointStatus.unavailable
            and self._idle_status() != ChargePointStatus.unavailable
        ):
            await self._enter_idle()
            return True

        if previous_availability != availability:
            await self._notify(connector.status)
        return False

    async def fault(self, error_code: ChargePointErrorCode) -> bool:
        """
        FaultDetected.

        An idle connector goes straight to Faulted with the relay open. A connector
        holding a transaction only records the fault; it lands in Faulted once the
        transaction's stop is acknowledged. Returns True if the status changed.
        """
        connector = self.connector
        if connector.status == ChargePointStatus.faulted:
            return False
        if connector.transaction is not None:
            connector.pending_fault = error_code
            return False

        await self._relay_off()
        connector.reservation = None
        connector.pending_id_tag = None
        connector.pending_fault = error_code
        await self._enter(ChargePointStatus.faulted, error_code)
        return True

    async def clear_fault(self) -> bool:
        """Leave Faulted after an explicit reset."""
        self.connector.pending_fault = None
        if self.connector.status != ChargePointStatus.faulted:
            return False
        await self._enter_idle()
        return True

    async def mark_telemetry_lost(self) -> bool:
        """Take an idle connector out of service because its meter stopped answering."""
        connector = self.connector
        connector.telemetry_lost = True
        if connector.status not in (ChargePointStatus.available, ChargePointStatus.reserved):
            return False
        connector.reservation = None
        await self._enter_idle()
        return True

    async def mark_telemetry_restored(self) -> bool:
        """Return a connector taken out of service for telemetry loss."""
        connector = self.connector
        if not connector.telemetry_lost:
            return False
        connector.telemetry_lost = False
        if (
            connector.status == ChargePointStatus.unavailable
            and self._idle_status() == ChargePointStatus.available
        ):
            await self._enter_idle()
            return True
        return False

    # Persistence

    def snapshot(self) -> PersistedConnector:
        connector = self.connector
        transaction = connector.transaction
        return PersistedConnector(
            connector_id=connector.connector_id,
            status=connector.status.value,
            availability=connector.availability.value,
            error_code=connector.error_code.value,
            transaction_id=transaction.transaction_id if transaction else None,
            id_tag=connector.id_tag,
            meter_start_wh=transaction.meter_start_wh if transaction else None,
            meter_stop_wh=transaction.meter_stop_wh if transaction else None,
            started_at=transaction.started_at if transaction else None,
        )

    async def restore(self, record: PersistedConnector) -> None:
        """
        Rebuild the record after a restart, with the relay open.

        A transaction that was running when the station went down comes back in
        Finishing so it can be closed with the central system.
        """
        connector = self.connector
        connector.availability = AvailabilityType(record.availability)
        await self._relay_off()

        status = ChargePointStatus(record.status)
        if record.transaction_id is not None and status in _IN_TRANSACTION:
            connector.transaction = ActiveTransaction(
                transaction_id=record.transaction_id,
                id_tag=record.id_tag or "",
                meter_start_wh=record.meter_start_wh or 0,
                started_at=record.started_at,
                meter_stop_wh=record.meter_stop_wh,
                recovered=True,
            )
            connector.status = ChargePointStatus.finishing
        elif status == ChargePointStatus.faulted:
            connector.status = ChargePointStatus.faulted
            connector.error_code = ChargePointErrorCode(record.error_code)
        else:
            connector.status = self._idle_status()
            connector.error_code = self._idle_error_code(connector.status)
        logger.info(
            f"Connector {self.connector_id} restored as {connector.status.value}",
            extra={
                "event_type": "connector_restored",
                "event_data": {
                    "connector_id": self.connector_id,
                    "status": connector.status.value,
                    "transaction_id": record.transaction_id,
                },
            },
        )
