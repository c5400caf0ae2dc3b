"""Domain models."""

from .domain import (
    ActiveTransaction,
    AuthorizationEntry,
    Connector,
    LiveReading,
    MeterSample,
    PersistedConnector,
    Reservation,
)

__all__ = [
    "ActiveTransaction",
    "AuthorizationEntry",
    "Connector",
    "LiveReading",
    "MeterSample",
    "PersistedConnector",
    "Reservation",
]
