"""OCPP message handlers."""

from .station import StationController

__all__ = ["StationController"]
