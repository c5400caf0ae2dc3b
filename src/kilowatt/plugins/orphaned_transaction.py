"""Plugin to close transactions interrupted by a restart."""

from ocpp.v16.enums import Reason, RegistrationStatus

from .base import PluginContext, PluginHook, StationPlugin


class OrphanedTransactionPlugin(StationPlugin):
    """
    Closes transactions that were running when the station went down.

    Connector state is persisted after every transition, so a transaction that was
    charging at power loss comes back from the database in Finishing. Once the central
    system accepts the next BootNotification this plugin sends the StopTransaction
    for each of them with:
    - The current energy register (or the last known reading) as meter_stop
    - "PowerLoss" as the stop reason
    """

    def __init__(self, reason: str = Reason.power_loss):
        super().__init__()
        self.reason = reason

    def hooks(self) -> dict[PluginHook, str]:
        return {
            PluginHook.AFTER_BOOT_NOTIFICATION: "on_boot_accepted",
        }

    async def on_boot_accepted(self, context: PluginContext):
        if (context.result or {}).get("status") != RegistrationStatus.accepted:
            return
        closed = await context.station.sessions.close_recovered(self.reason)
        if closed:
            self.logger.info(f"Closed interrupted transactions {closed} ({self.reason})")
