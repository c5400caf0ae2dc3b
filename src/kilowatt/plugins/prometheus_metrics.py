"""Plugin for Prometheus metrics instrumentation."""

import time

from prometheus_client import Counter, Gauge, Histogram

from .base import PluginContext, PluginHook, StationPlugin

STATUS_CODES = {
    "Available": 0,
    "Preparing": 1,
    "Charging": 2,
    "SuspendedEVSE": 3,
    "SuspendedEV": 4,
    "Finishing": 5,
    "Reserved": 6,
    "Unavailable": 7,
    "Faulted": 8,
}


class PrometheusMetricsPlugin(StationPlugin):
    """
    Exposes Prometheus metrics for the station.

    This plugin tracks:
    - Connection to the central system (connected, boots, heartbeats, disconnects)
    - Inbound command handling latency
    - Connector status and errors
    - Transaction lifecycle and energy delivery
    - Meter readings and meter read failures

    Metrics are exposed via the standard prometheus_client registry.
    Use prometheus_client.start_http_server() or generate_latest() to expose /metrics.
    """

    # Class-level metrics (shared across all plugin instances)

    kw_station_up = Gauge(
        "kw_station_up",
        "1 if the station controller is running, 0 otherwise",
    )

    kw_ocpp_connected = Gauge(
        "kw_ocpp_connected",
        "1 if the WebSocket to the central system is open, 0 otherwise",
        labelnames=["station"],
    )

    kw_ocpp_disconnects_total = Counter(
        "kw_ocpp_disconnects_total",
        "Total number of disconnections from the central system",
        labelnames=["station"],
    )

    kw_ocpp_boots_total = Counter(
        "kw_ocpp_boots_total",
        "Total number of BootNotification responses, by registration status",
        labelnames=["station", "status"],
    )

    kw_ocpp_last_heartbeat_ts = Gauge(
        "kw_ocpp_last_heartbeat_ts",
        "Unix timestamp of the last acknowledged heartbeat",
        labelnames=["station"],
    )

    kw_command_seconds = Histogram(
        "kw_command_seconds",
        "Inbound OCPP command handling duration in seconds",
        labelnames=["station", "action"],
    )

    # Connectors
    kw_connector_status = Gauge(
        "kw_connector_status",
        "Numeric status code of the connector (0 = Available ... 8 = Faulted)",
        labelnames=["station", "connector_id"],
    )

    kw_connector_errors_total = Counter(
        "kw_connector_errors_total",
        "Total number of error codes reported in StatusNotification",
        labelnames=["station", "connector_id", "error_code"],
    )

    # Transactions
    kw_tx_active = Gauge(
        "kw_tx_active",
        "1 if a transaction is active on the connector, 0 otherwise",
        labelnames=["station", "connector_id"],
    )

    kw_tx_energy_wh = Gauge(
        "kw_tx_energy_wh",
        "Energy delivered in the current transaction (Wh)",
        labelnames=["station", "connector_id"],
    )

    kw_tx_total = Counter(
        "kw_tx_total",
        "Total transaction count",
        labelnames=["station"],
    )

    kw_energy_total_wh = Counter(
        "kw_energy_total_wh",
        "Cumulative energy delivered (Wh)",
        labelnames=["station"],
    )

    # Meters
    kw_meter_energy_wh = Gauge(
        "kw_meter_energy_wh",
        "Last energy register reading (Wh)",
        labelnames=["station", "connector_id"],
    )

    kw_meter_current_a = Gauge(
        "kw_meter_current_a",
        "Last measured current (A)",
        labelnames=["station", "connector_id"],
    )

    kw_meter_power_w = Gauge(
        "kw_meter_power_w",
        "Last measured active power (W)",
        labelnames=["station", "connector_id"],
    )

    kw_meter_failures_total = Counter(
        "kw_meter_failures_total",
        "Total number of failed meter reads",
        labelnames=["station", "connector_id", "error_type"],
    )

    kw_meter_disabled_total = Counter(
        "kw_meter_disabled_total",
        "Total number of times a meter was disabled by its circuit breaker",
        labelnames=["station", "connector_id"],
    )

    def __init__(self):
        """Initialize the Prometheus metrics plugin."""
        super().__init__()
        self.kw_station_up.set(1)

    def hooks(self) -> dict[PluginHook, str]:
        return {
            PluginHook.AFTER_CONNECT: "after_connect",
            PluginHook.AFTER_DISCONNECT: "after_disconnect",
            PluginHook.AFTER_BOOT_NOTIFICATION: "after_boot_notification",
            PluginHook.AFTER_HEARTBEAT: "after_heartbeat",
            PluginHook.AFTER_STATUS_NOTIFICATION: "after_status_notification",
            PluginHook.AFTER_START_TRANSACTION: "after_start_transaction",
            PluginHook.AFTER_STOP_TRANSACTION: "after_stop_transaction",
            PluginHook.AFTER_METER_VALUES: "after_meter_values",
            PluginHook.AFTER_TELEMETRY_SAMPLE: "after_telemetry_sample",
            PluginHook.AFTER_TELEMETRY_FAILURE: "after_telemetry_failure",
            PluginHook.AFTER_REMOTE_COMMAND: "after_remote_command",
        }

    async def cleanup(self, station):
        self.kw_ocpp_connected.labels(station=station.id).set(0)
        self.kw_station_up.set(0)

    # Hook handlers

    async def after_connect(self, context: PluginContext):
        self.kw_ocpp_connected.labels(station=context.station.id).set(1)

    async def after_disconnect(self, context: PluginContext):
        station = context.station.id
        self.kw_ocpp_connected.labels(station=station).set(0)
        self.kw_ocpp_disconnects_total.labels(station=station).inc()

    async def after_boot_notification(self, context: PluginContext):
        status = (context.result or {}).get("status", "Unknown")
        self.kw_ocpp_boots_total.labels(station=context.station.id, status=status).inc()

    async def after_heartbeat(self, context: PluginContext):
        self.kw_ocpp_last_heartbeat_ts.labels(station=context.station.id).set(time.time())

    async def after_status_notification(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        status = context.event_data.get("status")
        error_code = context.event_data.get("error_code")

        self.kw_connector_status.labels(station=station, connector_id=connector_id).set(
            STATUS_CODES.get(status, -1)
        )
        if error_code and error_code != "NoError":
            self.kw_connector_errors_total.labels(
                station=station, connector_id=connector_id, error_code=error_code
            ).inc()

    async def after_start_transaction(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        self.kw_tx_active.labels(station=station, connector_id=connector_id).set(1)
        self.kw_tx_energy_wh.labels(station=station, connector_id=connector_id).set(0)
        self.kw_tx_total.labels(station=station).inc()

    async def after_stop_transaction(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        self.kw_tx_active.labels(station=station, connector_id=connector_id).set(0)
        self.kw_tx_energy_wh.labels(station=station, connector_id=connector_id).set(0)

        meter_start = context.event_data.get("meter_start")
        meter_stop = context.event_data.get("meter_stop")
        if meter_start is not None and meter_stop is not None and meter_stop >= meter_start:
            self.kw_energy_total_wh.labels(station=station).inc(meter_stop - meter_start)

    async def after_meter_values(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        meter_start = context.event_data.get("meter_start")
        for sample in context.event_data.get("meter_value", []):
            for value in sample.get("sampled_value", []):
                if value.get("measurand") != "Energy.Active.Import.Register":
                    continue
                try:
                    reading = float(value.get("value"))
                except (TypeError, ValueError):
                    continue
                if meter_start is not None:
                    self.kw_tx_energy_wh.labels(station=station, connector_id=connector_id).set(
                        reading - meter_start
                    )

    async def after_telemetry_sample(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        data = context.event_data
        self.kw_meter_energy_wh.labels(station=station, connector_id=connector_id).set(
            data["energy_wh"]
        )
        if data.get("current_a") is not None:
            self.kw_meter_current_a.labels(station=station, connector_id=connector_id).set(
                data["current_a"]
            )
        if data.get("power_w") is not None:
            self.kw_meter_power_w.labels(station=station, connector_id=connector_id).set(
                data["power_w"]
            )

    async def after_telemetry_failure(self, context: PluginContext):
        station = context.station.id
        connector_id = str(context.event_data.get("connector_id"))
        self.kw_meter_failures_total.labels(
            station=station,
            connector_id=connector_id,
            error_type=context.event_data.get("error_type", "Unknown"),
        ).inc()
        if context.event_data.get("tripped"):
            self.kw_meter_disabled_total.labels(station=station, connector_id=connector_id).inc()

    async def after_remote_command(self, context: PluginContext):
        self.kw_command_seconds.labels(
            station=context.station.id, action=context.event_data.get("action", "Unknown")
        ).observe(context.event_data.get("duration", 0.0))
