"""Domain models for the charge point controller."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ocpp.v16.enums import AvailabilityType, ChargePointErrorCode, ChargePointStatus


@dataclass
class MeterSample:
    """One decoded reading of a connector's energy meter."""

    energy_wh: int
    current_a: Optional[float] = None
    power_w: Optional[float] = None


@dataclass
class LiveReading:
    """Most recent successful meter sample of a connector."""

    energy_wh: int = 0
    current_a: Optional[float] = None
    power_w: Optional[float] = None
    taken_at: Optional[datetime] = None
    stale: bool = True


@dataclass
class ActiveTransaction:
    """A transaction the central system has accepted and not yet seen stopped."""

    transaction_id: int
    id_tag: str
    meter_start_wh: int
    started_at: datetime
    reservation_id: Optional[int] = None
    meter_stop_wh: Optional[int] = None
    stop_reason: Optional[str] = None
    recovered: bool = False

    @property
    def stop_pending(self) -> bool:
        return self.meter_stop_wh is not None


@dataclass
class Reservation:
    """A connector held for one id tag until an expiry time."""

    reservation_id: int
    connector_id: int
    id_tag: str
    expiry: datetime
    parent_id_tag: Optional[str] = None


@dataclass
class Connector:
    """Runtime record of one physical connector."""

    connector_id: int
    status: ChargePointStatus = ChargePointStatus.available
    availability: AvailabilityType = AvailabilityType.operative
    error_code: ChargePointErrorCode = ChargePointErrorCode.no_error
    relay_on: bool = False
    transaction: Optional[ActiveTransaction] = None
    reservation: Optional[Reservation] = None
    pending_id_tag: Optional[str] = None
    telemetry_lost: bool = False
    pending_fault: Optional[ChargePointErrorCode] = None
    meter_serial_number: Optional[str] = None
    live_reading: LiveReading = field(default_factory=LiveReading)

    @property
    def id_tag(self) -> Optional[str]:
        if self.transaction is not None:
            return self.transaction.id_tag
        return self.pending_id_tag


@dataclass
class PersistedConnector:
    """Subset of a connector record that survives a restart."""

    connector_id: int
    status: str
    availability: str
    transaction_id: Optional[int] = None
    id_tag: Optional[str] = None
    meter_start_wh: Optional[int] = None
    meter_stop_wh: Optional[int] = None
    started_at: Optional[datetime] = None
    error_code: str = "NoError"
    updated_at: Optional[datetime] = None


@dataclass
class AuthorizationEntry:
    """One id tag of the local authorization list or cache."""

    id_tag: str
    status: str
    expiry_date: Optional[datetime] = None
    parent_id_tag: Optional[str] = None
    is_cache: bool = False
