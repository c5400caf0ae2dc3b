"""Modbus RTU master shared by every energy meter on the RS-485 line."""

import asyncio
import logging

from pymodbus.client import AsyncModbusSerialClient
from pymodbus.exceptions import ModbusException

from ..config import ConnectorConfig, ModbusConfig
from ..errors import ModbusTimeout, ModbusTransportError
from ..logging_utils import log_modbus_event
from ..models import MeterSample

logger = logging.getLogger(__name__)

_DATATYPES = {
    (1, True): AsyncModbusSerialClient.DATATYPE.INT16,
    (1, False): AsyncModbusSerialClient.DATATYPE.UINT16,
    (2, True): AsyncModbusSerialClient.DATATYPE.INT32,
    (2, False): AsyncModbusSerialClient.DATATYPE.UINT32,
}


def decode_registers(registers: list[int], signed: bool = True) -> int:
    """Combine one or two big-endian registers into an integer."""
    if len(registers) not in (1, 2):
        raise ValueError(f"expected 1 or 2 registers, got {len(registers)}")
    return AsyncModbusSerialClient.convert_from_registers(
        registers, data_type=_DATATYPES[(len(registers), signed)], word_order="big"
    )


def decode_scaled(registers: list[int], scale: float) -> float:
    """Decode a signed quantity and return its magnitude in canonical units."""
    return abs(decode_registers(registers, signed=True)) * scale


def decode_ascii(registers: list[int]) -> str | None:
    """Decode a register block holding an ASCII string padded with NULs or spaces."""
    text = AsyncModbusSerialClient.convert_from_registers(
        registers, data_type=AsyncModbusSerialClient.DATATYPE.STRING
    )
    text = text.strip("\x00 ")
    return text or None


class MeterBus:
    """
    Serializes every register read on the shared serial line.

    One request is in flight at a time. Each request is raced against a timeout and
    the bus lock is released however the request ends. Failed reads are not retried
    here; the telemetry poller owns the failure policy.
    """

    def __init__(self, client: AsyncModbusSerialClient):
        self.client = client
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: ModbusConfig) -> "MeterBus":
        client = AsyncModbusSerialClient(
            port=config.port,
            baudrate=config.baudrate,
            bytesize=config.bytesize,
            parity=config.parity,
            stopbits=config.stopbits,
            timeout=config.timeout,
            retries=0,
        )
        return cls(client)

    @property
    def connected(self) -> bool:
        return bool(self.client.connected)

    async def connect(self) -> bool:
        """Open the serial port. Returns False when the port cannot be opened."""
        async with self._lock:
            connected = await self.client.connect()
        if connected:
            logger.info("Modbus bus connected")
        else:
            logger.warning("Modbus bus could not be opened")
        return bool(connected)

    def close(self) -> None:
        self.client.close()

    async def read(
        self,
        device_address: int,
        register: int,
        register_count: int,
        timeout: float,
        input_registers: bool = False,
    ) -> list[int]:
        """
        Read a block of registers from one meter.

        Raises:
            ModbusTimeout: no answer within ``timeout`` seconds
            ModbusTransportError: transport failure or exception response
        """
        async with self._lock:
            if not self.client.connected and not await self.client.connect():
                raise ModbusTransportError("serial port is not open")

            request = (
                self.client.read_input_registers
                if input_registers
                else self.client.read_holding_registers
            )
            try:
                response = await asyncio.wait_for(
                    request(register, count=register_count, device_id=device_address),
                    timeout,
                )
            except TimeoutError:
                log_modbus_event(logger, "timeout", device_address, register, logging.WARNING)
                raise ModbusTimeout(
                    f"device {device_address} register {register}: no answer in {timeout}s"
                ) from None
            except ModbusException as e:
                log_modbus_event(
                    logger, "transport_error", device_address, register, logging.WARNING,
                    error=str(e),
                )
                raise ModbusTransportError(
                    f"device {device_address} register {register}: {e}"
                ) from e

        if response.isError():
            log_modbus_event(
                logger, "exception_response", device_address, register, logging.WARNING,
                response=str(response),
            )
            raise ModbusTransportError(
                f"device {device_address} register {register}: exception response {response}"
            )
        if len(response.registers) < register_count:
            raise ModbusTransportError(
                f"device {device_address} register {register}: short response"
            )

        log_modbus_event(logger, "read", device_address, register, registers=response.registers)
        return list(response.registers[:register_count])

    async def read_sample(self, connector: ConnectorConfig, timeout: float) -> MeterSample:
        """Read energy and the optional current and power registers of one connector."""
        energy = await self.read(
            connector.meter_address,
            connector.energy_register,
            connector.energy_register_count,
            timeout,
            connector.input_registers,
        )
        sample = MeterSample(energy_wh=round(decode_scaled(energy, connector.energy_scale)))

        if connector.current_register is not None:
            current = await self.read(
                connector.meter_address,
                connector.current_register,
                connector.current_register_count,
                timeout,
                connector.input_registers,
            )
            sample.current_a = decode_scaled(current, connector.current_scale)

        if connector.power_register is not None:
            power = await self.read(
                connector.meter_address,
                connector.power_register,
                connector.power_register_count,
                timeout,
                connector.input_registers,
            )
            sample.power_w = decode_scaled(power, connector.power_scale)

        return sample

    async def read_serial_number(self, connector: ConnectorConfig, timeout: float) -> str | None:
        """Read the meter's ASCII serial number, if the connector declares where it lives."""
        if connector.serial_number_register is None:
            return None
        registers = await self.read(
            connector.meter_address,
            connector.serial_number_register,
            4,
            timeout,
            connector.input_registers,
        )
        return decode_ascii(registers)
