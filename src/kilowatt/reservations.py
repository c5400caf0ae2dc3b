"""Connector reservations and their expiry."""

import logging
from datetime import UTC, datetime

from ocpp.v16.enums import ChargePointStatus

from .connector import ConnectorState
from .errors import UnknownConnector
from .models import Reservation

logger = logging.getLogger(__name__)


class ReservationRegistry:
    """
    Single writer of connector reservations.

    The reservation itself lives on the connector record; every change is made while
    holding that connector's lock, so a sweep can never race a cancel or a start.
    """

    def __init__(self, connectors: dict[int, ConnectorState]):
        self.connectors = connectors

    def find(self, reservation_id: int) -> Reservation | None:
        for state in self.connectors.values():
            reservation = state.connector.reservation
            if reservation is not None and reservation.reservation_id == reservation_id:
                return reservation
        return None

    def active(self) -> list[Reservation]:
        return [
            state.connector.reservation
            for state in self.connectors.values()
            if state.connector.reservation is not None
        ]

    async def reserve(
        self,
        reservation_id: int,
        connector_id: int,
        id_tag: str,
        expiry: datetime,
        parent_id_tag: str | None = None,
    ) -> Reservation:
        """
        Reserve ``connector_id`` for ``id_tag`` until ``expiry``.

        Raises:
            UnknownConnector: no such connector (connector 0 included)
            InvalidTransition: the connector is not Available
        """
        state = self.connectors.get(connector_id)
        if state is None:
            raise UnknownConnector(connector_id)

        existing = self.find(reservation_id)
        reservation = Reservation(
            reservation_id=reservation_id,
            connector_id=connector_id,
            id_tag=id_tag,
            expiry=expiry,
            parent_id_tag=parent_id_tag,
        )
        async with state.lock:
            await state.reserve(reservation)

        if existing is not None and existing.connector_id != connector_id:
            # a reservation id moved to another connector releases the old one,
            # only once the new connector has taken it
            previous = self.connectors[existing.connector_id]
            async with previous.lock:
                await previous.release_reservation(reservation_id)
            logger.info(
                f"Reservation {reservation_id} moved from connector "
                f"{existing.connector_id} to {connector_id}"
            )
        logger.info(
            f"Reservation {reservation_id} holds connector {connector_id} for {id_tag}",
            extra={
                "event_type": "reservation_created",
                "event_data": {
                    "reservation_id": reservation_id,
                    "connector_id": connector_id,
                    "id_tag": id_tag,
                    "expiry": expiry.isoformat(),
                },
            },
        )
        return reservation

    async def cancel(self, reservation_id: int) -> bool:
        """Drop a reservation; False if no connector holds it."""
        reservation = self.find(reservation_id)
        if reservation is None:
            return False
        state = self.connectors[reservation.connector_id]
        async with state.lock:
            released = await state.release_reservation(reservation_id)
        if released:
            logger.info(f"Reservation {reservation_id} cancelled")
        return released

    async def sweep(self, now: datetime | None = None) -> list[int]:
        """Release every reservation whose expiry is at or before ``now``."""
        now = now or datetime.now(UTC)
        expired = []
        for state in self.connectors.values():
            async with state.lock:
                reservation = state.connector.reservation
                if reservation is None or reservation.expiry > now:
                    continue
                if state.status != ChargePointStatus.reserved:
                    state.connector.reservation = None
                    continue
                await state.release_reservation(reservation.reservation_id)
                expired.append(reservation.reservation_id)
        if expired:
            logger.info(
                f"Expired reservations: {expired}",
                extra={"event_type": "reservations_expired", "event_data": {"ids": expired}},
            )
        return expired
