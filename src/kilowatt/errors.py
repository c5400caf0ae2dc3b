"""Exception types raised by the charge point controller."""

from typing import Any


class KilowattError(Exception):
    """Base class for all controller errors."""


class ConfigurationError(KilowattError):
    """Static configuration or the state database is missing, malformed or too new."""


class ModbusError(KilowattError):
    """A meter read failed."""


class ModbusTimeout(ModbusError):
    """The meter did not answer within the read timeout."""


class ModbusTransportError(ModbusError):
    """The serial transport failed or the meter returned an exception response."""


class RelayError(KilowattError):
    """The relay output could not be driven."""


class RpcError(KilowattError):
    """An outbound OCPP call did not produce a result."""


class RpcTimeout(RpcError):
    """No CALLRESULT arrived before the call timeout."""


class ConnectionClosed(RpcError):
    """The WebSocket transport is not open."""


class CallErrorResponse(RpcError):
    """The central system answered with a CALLERROR frame."""

    def __init__(self, error_code: str, description: str = "", details: dict[str, Any] | None = None):
        super().__init__(f"{error_code}: {description}" if description else error_code)
        self.error_code = error_code
        self.description = description
        self.details = details or {}


class InvalidTransition(KilowattError):
    """A trigger does not apply to the connector's current status."""

    def __init__(self, connector_id: int, status: str, trigger: str):
        super().__init__(f"connector {connector_id}: {trigger} not allowed while {status}")
        self.connector_id = connector_id
        self.status = status
        self.trigger = trigger


class UnknownConnector(KilowattError):
    """No connector with the requested id is configured."""

    def __init__(self, connector_id: int | None):
        super().__init__(f"unknown connector {connector_id}")
        self.connector_id = connector_id


class UnknownTransaction(KilowattError):
    """No connector holds the requested transaction."""

    def __init__(self, transaction_id: int):
        super().__init__(f"unknown transaction {transaction_id}")
        self.transaction_id = transaction_id


class MaintenanceError(KilowattError):
    """A firmware or diagnostics collaborator could not finish its job."""
