"""Kilowatt - OCPP 1.6 charge point controller."""

__version__ = "0.1.0"
