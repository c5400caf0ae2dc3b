"""
Example station with plugins enabled.

This demonstrates how to use the plugin framework with:
1. OrphanedTransactionPlugin - closes transactions interrupted by a power loss
2. PrometheusMetricsPlugin - exposes station metrics on http://localhost:8000/metrics
3. A custom plugin that logs the energy of every finished transaction

Relays are simulated, so this runs on a development machine with a USB RS-485
adapter (or with no meters at all, in which case every meter is taken out of service).
"""

import asyncio
import logging
import sys

from prometheus_client import start_http_server

from kilowatt.config import load_config
from kilowatt.database import Database
from kilowatt.hardware import MemoryRelay, MeterBus
from kilowatt.plugins import OrphanedTransactionPlugin, PrometheusMetricsPlugin
from kilowatt.plugins.base import PluginContext, PluginHook, StationPlugin
from kilowatt.runtime import StationRuntime

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


class EnergyReportPlugin(StationPlugin):
    """Logs how much energy each transaction delivered."""

    def hooks(self) -> dict[PluginHook, str]:
        return {PluginHook.AFTER_STOP_TRANSACTION: "on_stop"}

    async def on_stop(self, context: PluginContext):
        data = context.event_data
        delivered = data["meter_stop"] - data["meter_start"]
        self.logger.info(
            f"Transaction {data['transaction_id']} on connector {data['connector_id']} "
            f"delivered {delivered} Wh ({data['reason']})"
        )


async def main(config_path: str):
    config = load_config(config_path)

    start_http_server(8000)

    runtime = StationRuntime(
        config,
        Database(config.database),
        MeterBus.from_config(config.modbus),
        MemoryRelay(),
        plugins=[
            OrphanedTransactionPlugin(),
            PrometheusMetricsPlugin(),
            EnergyReportPlugin(),
        ],
    )
    await runtime.run()


if __name__ == "__main__":
    try:
        asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "kilowatt.example.json"))
    except KeyboardInterrupt:
        print("\nStation stopped")
