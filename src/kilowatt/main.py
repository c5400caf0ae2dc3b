"""Main entry point for the Kilowatt charge point controller."""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv
from prometheus_client import start_http_server

from kilowatt.config import load_config
from kilowatt.database import Database
from kilowatt.errors import ConfigurationError
from kilowatt.hardware import MemoryRelay, MeterBus, SysfsRelay
from kilowatt.logging_utils import JSONFormatter, log_error
from kilowatt.plugins import FluentdAuditPlugin, OrphanedTransactionPlugin, PrometheusMetricsPlugin
from kilowatt.runtime import StationRuntime


def setup_logging(level: str = "INFO", log_file: str | None = None):
    """Configure JSON logging for the application."""
    json_formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(json_formatter)
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(json_formatter)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = handlers

    # Suppress verbose logging from dependencies
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("ocpp").setLevel(logging.WARNING)
    logging.getLogger("pymodbus").setLevel(logging.WARNING)


def parse_endpoint(parser: argparse.ArgumentParser, endpoint: str) -> tuple[str, int]:
    if ":" not in endpoint:
        parser.error("--fluentd-endpoint must be in host:port format (e.g., localhost:24224)")
    host, port_str = endpoint.rsplit(":", 1)
    if not host:
        parser.error("--fluentd-endpoint host cannot be empty")
    try:
        return host, int(port_str)
    except ValueError:
        parser.error(f"Invalid port in --fluentd-endpoint: {endpoint}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Kilowatt - OCPP 1.6 charge point controller")
    parser.add_argument(
        "--config",
        default=os.getenv("KILOWATT_CONFIG", "kilowatt.json"),
        help="Path to the station configuration file (default: $KILOWATT_CONFIG or kilowatt.json)",
    )
    parser.add_argument(
        "--db",
        default=os.getenv("KILOWATT_DB"),
        help="Path to SQLite database file (default: the configuration's database)",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("KILOWATT_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=os.getenv("KILOWATT_LOG_FILE"),
        help="Also write JSON logs to this file",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=os.getenv("KILOWATT_METRICS_PORT"),
        help="Port for Prometheus metrics HTTP server (default: disabled)",
    )
    parser.add_argument(
        "--fluentd-endpoint",
        default=os.getenv("KILOWATT_FLUENTD_ENDPOINT"),
        help="Fluentd endpoint in host:port format (e.g., localhost:24224). If provided, enables Fluentd audit logging.",
    )
    parser.add_argument(
        "--fluentd-tag",
        default="kilowatt",
        help="Tag prefix for Fluentd events (default: kilowatt)",
    )
    parser.add_argument(
        "--simulate-relays",
        action="store_true",
        help="Keep relay outputs in memory instead of writing the configured GPIO paths",
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    """Main application entry point."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    fluentd = parse_endpoint(parser, args.fluentd_endpoint) if args.fluentd_endpoint else None

    setup_logging(args.log_level, args.log_file)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        log_error(logger, "configuration_error", f"Cannot start: {e}")
        return 1

    logger.info(
        "System starting",
        extra={
            "event_type": "system_startup",
            "event_data": {
                "station": config.station_name,
                "central_system_url": config.central_system_url,
                "connectors": [c.id for c in config.connectors],
                "modbus_port": config.modbus.port,
                "metrics_port": args.metrics_port,
                "fluentd_endpoint": args.fluentd_endpoint,
            },
        },
    )

    plugins = [OrphanedTransactionPlugin()]
    if args.metrics_port:
        start_http_server(int(args.metrics_port))
        plugins.append(PrometheusMetricsPlugin())
    if fluentd:
        host, port = fluentd
        plugins.append(
            FluentdAuditPlugin(tag_prefix=args.fluentd_tag, host=host, port=port, timeout=3.0)
        )

    runtime = StationRuntime(
        config,
        Database(args.db or config.database),
        MeterBus.from_config(config.modbus),
        MemoryRelay() if args.simulate_relays else SysfsRelay(),
        plugins=plugins,
    )

    try:
        await runtime.run()
    except asyncio.CancelledError:
        logger.info(
            "System shutting down",
            extra={"event_type": "system_shutdown", "event_data": {"reason": "SIGINT"}},
        )
    except Exception as e:
        log_error(logger, "runtime_error", f"Runtime error: {e}", exc_info=e)
        raise
    return 0


def run():
    """Entry point for console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nShutdown complete")
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
