"""Base plugin infrastructure for the station controller."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..handlers.station import StationController

logger = logging.getLogger(__name__)


class PluginHook(str, Enum):
    """
    Points in the station lifecycle where plugins are called.

    All hooks fire after the event has happened; a plugin can observe and react but
    cannot veto.
    """

    # Connection lifecycle
    AFTER_CONNECT = "after_connect"
    AFTER_DISCONNECT = "after_disconnect"
    AFTER_BOOT_NOTIFICATION = "after_boot_notification"
    AFTER_HEARTBEAT = "after_heartbeat"

    # Connector status
    AFTER_STATUS_NOTIFICATION = "after_status_notification"

    # Transactions
    AFTER_AUTHORIZE = "after_authorize"
    AFTER_START_TRANSACTION = "after_start_transaction"
    AFTER_STOP_TRANSACTION = "after_stop_transaction"
    AFTER_METER_VALUES = "after_meter_values"

    # Telemetry
    AFTER_TELEMETRY_SAMPLE = "after_telemetry_sample"
    AFTER_TELEMETRY_FAILURE = "after_telemetry_failure"

    # Commands from the central system
    AFTER_REMOTE_COMMAND = "after_remote_command"


@dataclass
class PluginContext:
    """
    Context provided to plugin hooks.

    Contains:
    - station: Reference to the StationController instance
    - event_data: Event fields (connector id, transaction id, payload, ...)
    - result: Response of the central system, when the event was a call
    """

    station: "StationController"
    event_data: dict[str, Any]
    result: Any = None


class StationPlugin(ABC):
    """
    Base class for station plugins.

    To create a plugin:
    1. Subclass StationPlugin
    2. Implement the `hooks()` method to register your hook handlers
    3. Implement async methods for each hook you want to handle

    Example:
        class MyPlugin(StationPlugin):
            def hooks(self) -> dict[PluginHook, str]:
                return {PluginHook.AFTER_START_TRANSACTION: "on_start"}

            async def on_start(self, context: PluginContext):
                logger.info(f"Charging on {context.event_data['connector_id']}")
    """

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def hooks(self) -> dict[PluginHook, str]:
        """
        Return a mapping of hooks to handler method names.

        Returns:
            Dictionary mapping PluginHook enum values to method names on this class.
        """

    async def initialize(self, station: "StationController"):
        """Called once when the station starts. Override for setup work."""
        _ = station

    async def cleanup(self, station: "StationController"):
        """Called once when the station shuts down. Override for teardown work."""
        _ = station
