"""Structured JSON logging utilities for event-based logging."""

import json
import logging
from datetime import UTC, datetime
from typing import Any


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "event_type"):
            log_data["event_type"] = record.event_type
        if hasattr(record, "event_data"):
            log_data.update(record.event_data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _event_data(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    # None values are dropped
    for key, value in extra.items():
        if value is not None:
            base[key] = value
    return base


def log_ocpp_message(
    logger: logging.Logger,
    direction: str,
    station: str,
    message_type: str,
    message_id: str | None = None,
    action: str | None = None,
    payload: dict[str, Any] | None = None,
    **kwargs: Any,
) -> None:
    """
    Log an OCPP frame.

    Args:
        logger: Logger instance
        direction: "received" or "sent"
        station: Station identity
        message_type: "CALL", "CALLRESULT", "CALLERROR"
        message_id: OCPP message ID
        action: OCPP action name (e.g., "StartTransaction")
        payload: Message payload
        **kwargs: Additional fields to include
    """
    event_data = _event_data(
        {"direction": direction, "station": station, "message_type": message_type},
        {"message_id": message_id, "action": action, "payload": payload, **kwargs},
    )
    logger.info(
        f"OCPP {direction}: {action or message_type}",
        extra={"event_type": "ocpp_message", "event_data": event_data},
    )


def log_connector_event(
    logger: logging.Logger,
    connector_id: int,
    previous: str,
    status: str,
    **kwargs: Any,
) -> None:
    """Log a connector status transition."""
    event_data = _event_data(
        {"connector_id": connector_id, "previous": previous, "status": status}, kwargs
    )
    logger.info(
        f"Connector {connector_id}: {previous} -> {status}",
        extra={"event_type": "connector_transition", "event_data": event_data},
    )


def log_websocket_event(
    logger: logging.Logger,
    event: str,
    station: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a WebSocket event.

    Args:
        logger: Logger instance
        event: Event name (e.g., "connect", "disconnect", "error")
        station: Station identity (if applicable)
        **kwargs: Additional fields to include
    """
    event_data = _event_data({"event": event}, {"station": station, **kwargs})
    logger.info(
        f"WebSocket {event}", extra={"event_type": "websocket_event", "event_data": event_data}
    )


def log_modbus_event(
    logger: logging.Logger,
    event: str,
    device_address: int,
    register: int,
    level: int = logging.DEBUG,
    **kwargs: Any,
) -> None:
    """Log a Modbus read outcome."""
    event_data = _event_data(
        {"event": event, "device_address": device_address, "register": register}, kwargs
    )
    logger.log(
        level,
        f"Modbus {event} (device {device_address}, register {register})",
        extra={"event_type": "modbus_event", "event_data": event_data},
    )


def log_error(
    logger: logging.Logger,
    error_type: str,
    message: str,
    station: str | None = None,
    exc_info: BaseException | None = None,
    **kwargs: Any,
) -> None:
    """
    Log an error event.

    Args:
        logger: Logger instance
        error_type: Type of error (e.g., "handler_error", "plugin_error")
        message: Error message
        station: Station identity (if applicable)
        exc_info: Exception object (will extract traceback)
        **kwargs: Additional fields to include
    """
    event_data = _event_data({"error_type": error_type}, {"station": station, **kwargs})
    logger.error(message, extra={"event_type": "error", "event_data": event_data}, exc_info=exc_info)
