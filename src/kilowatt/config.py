"""Static station configuration loaded from a JSON file at startup."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError


def _require(data: dict[str, Any], key: str, context: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ConfigurationError(f"{context}: missing required key '{key}'") from None


@dataclass
class ConnectorConfig:
    """Wiring of one physical connector: its relay output and its energy meter."""

    id: int
    relay_path: str
    meter_address: int
    energy_register: int = 5218
    energy_register_count: int = 2
    energy_scale: float = 1.0
    current_register: int | None = 5220
    current_register_count: int = 1
    current_scale: float = 1.0
    power_register: int | None = None
    power_register_count: int = 2
    power_scale: float = 1.0
    serial_number_register: int | None = None
    input_registers: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectorConfig":
        context = f"connector {data.get('id', '?')}"
        register_type = data.get("registerType", "holding")
        if register_type not in ("holding", "input"):
            raise ConfigurationError(f"{context}: registerType must be 'holding' or 'input'")
        try:
            connector = cls(
                id=int(_require(data, "id", context)),
                relay_path=str(_require(data, "relayPath", context)),
                meter_address=int(_require(data, "meterAddress", context)),
                energy_register=int(data.get("energyRegister", cls.energy_register)),
                energy_register_count=int(
                    data.get("energyRegisterCount", cls.energy_register_count)
                ),
                energy_scale=float(data.get("energyScale", cls.energy_scale)),
                current_register=data.get("currentRegister", cls.current_register),
                current_register_count=int(
                    data.get("currentRegisterCount", cls.current_register_count)
                ),
                current_scale=float(data.get("currentScale", cls.current_scale)),
                power_register=data.get("powerRegister"),
                power_register_count=int(data.get("powerRegisterCount", cls.power_register_count)),
                power_scale=float(data.get("powerScale", cls.power_scale)),
                serial_number_register=data.get("serialNumberRegister"),
                input_registers=register_type == "input",
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{context}: {e}") from e

        if connector.id < 1:
            raise ConfigurationError(f"{context}: connector ids start at 1")
        counts = (
            connector.energy_register_count,
            connector.current_register_count,
            connector.power_register_count,
        )
        if any(count not in (1, 2) for count in counts):
            raise ConfigurationError(f"{context}: register counts must be 1 or 2")
        return connector


@dataclass
class ModbusConfig:
    """Serial line settings of the RS-485 meter bus."""

    port: str = "/dev/ttymxc4"
    baudrate: int = 9600
    bytesize: int = 8
    parity: str = "N"
    stopbits: int = 1
    timeout: float = 0.5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModbusConfig":
        return cls(
            port=data.get("port", cls.port),
            baudrate=int(data.get("baudRate", cls.baudrate)),
            bytesize=int(data.get("byteSize", cls.bytesize)),
            parity=data.get("parity", cls.parity),
            stopbits=int(data.get("stopBits", cls.stopbits)),
            timeout=float(data.get("timeout", cls.timeout)),
        )


@dataclass
class TelemetryConfig:
    """Polling cadence and circuit breaker parameters."""

    interval: float = 2.0
    read_timeout: float = 1.5
    failure_threshold: int = 3
    disable_window: float = 30.0
    zero_current_stop_seconds: float | None = None
    zero_current_threshold: float = 0.5

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TelemetryConfig":
        telemetry = cls(
            interval=float(data.get("intervalSeconds", cls.interval)),
            read_timeout=float(data.get("readTimeoutSeconds", cls.read_timeout)),
            failure_threshold=int(data.get("failureThreshold", cls.failure_threshold)),
            disable_window=float(data.get("disableWindowSeconds", cls.disable_window)),
            zero_current_stop_seconds=data.get("zeroCurrentStopSeconds"),
            zero_current_threshold=float(
                data.get("zeroCurrentThreshold", cls.zero_current_threshold)
            ),
        )
        if telemetry.interval <= 0 or telemetry.read_timeout <= 0:
            raise ConfigurationError("telemetry: interval and read timeout must be positive")
        if telemetry.failure_threshold < 1:
            raise ConfigurationError("telemetry: failureThreshold must be at least 1")
        return telemetry


@dataclass
class RpcConfig:
    """WebSocket and call correlation settings."""

    call_timeout: float = 30.0
    ping_interval: float | None = 20.0
    open_timeout: float = 10.0
    reconnect_initial: float = 5.0
    reconnect_max: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RpcConfig":
        return cls(
            call_timeout=float(data.get("callTimeoutSeconds", cls.call_timeout)),
            ping_interval=data.get("pingIntervalSeconds", cls.ping_interval),
            open_timeout=float(data.get("openTimeoutSeconds", cls.open_timeout)),
            reconnect_initial=float(data.get("reconnectInitialSeconds", cls.reconnect_initial)),
            reconnect_max=float(data.get("reconnectMaxSeconds", cls.reconnect_max)),
        )


@dataclass
class StationConfig:
    """Everything the station needs to know before it talks to anyone."""

    station_name: str
    central_system_url: str
    connectors: list[ConnectorConfig]
    vendor: str = "Kilowatt"
    model: str = "KW-AC"
    firmware_version: str = "1.0"
    iccid: str | None = None
    imsi: str | None = None
    database: str = "kilowatt.db"
    reservation_sweep_interval: float = 60.0
    modbus: ModbusConfig = field(default_factory=ModbusConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    rpc: RpcConfig = field(default_factory=RpcConfig)
    configuration_defaults: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StationConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("configuration root must be an object")

        url = str(_require(data, "centralSystemUrl", "station"))
        if not url.startswith(("ws://", "wss://")):
            raise ConfigurationError(f"centralSystemUrl must be a ws:// or wss:// URL: {url}")

        connectors = [ConnectorConfig.from_dict(c) for c in _require(data, "connectors", "station")]
        if not connectors:
            raise ConfigurationError("at least one connector must be configured")
        ids = [c.id for c in connectors]
        if len(set(ids)) != len(ids):
            raise ConfigurationError(f"duplicate connector ids: {ids}")

        return cls(
            station_name=str(_require(data, "stationName", "station")),
            central_system_url=url,
            connectors=sorted(connectors, key=lambda c: c.id),
            vendor=data.get("vendor", cls.vendor),
            model=data.get("model", cls.model),
            firmware_version=data.get("firmwareVersion", cls.firmware_version),
            iccid=data.get("iccid"),
            imsi=data.get("imsi"),
            database=data.get("database", cls.database),
            reservation_sweep_interval=float(
                data.get("reservationSweepSeconds", cls.reservation_sweep_interval)
            ),
            modbus=ModbusConfig.from_dict(data.get("modbus", {})),
            telemetry=TelemetryConfig.from_dict(data.get("telemetry", {})),
            rpc=RpcConfig.from_dict(data.get("rpc", {})),
            configuration_defaults={
                str(k): str(v) for k, v in data.get("configuration", {}).items()
            },
        )

    def connector(self, connector_id: int) -> ConnectorConfig | None:
        return next((c for c in self.connectors if c.id == connector_id), None)


def load_config(path: str | Path) -> StationConfig:
    """Read and validate the station configuration file."""
    config_file = Path(path)
    try:
        data = json.loads(config_file.read_text())
    except FileNotFoundError:
        raise ConfigurationError(f"configuration file not found: {config_file}") from None
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"configuration file {config_file} is not valid JSON: {e}") from e
    return StationConfig.from_dict(data)
