"""Relay outputs that switch power to the connectors."""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from ..errors import RelayError

logger = logging.getLogger(__name__)


class RelayActuator(ABC):
    """Drives one binary output per connector, addressed by an opaque handle."""

    @abstractmethod
    async def set_output(self, handle: str, on: bool) -> None:
        """Switch the output. Raises RelayError when the output cannot be driven."""


class SysfsRelay(RelayActuator):
    """Relay wired to a GPIO exported through sysfs; the handle is the value file."""

    async def set_output(self, handle: str, on: bool) -> None:
        value = "1" if on else "0"
        try:
            await asyncio.to_thread(Path(handle).write_text, value)
        except OSError as e:
            raise RelayError(f"failed to write {value} to {handle}: {e}") from e
        logger.debug(f"Relay {handle} -> {value}")


class MemoryRelay(RelayActuator):
    """Keeps outputs in memory. Used when running without hardware."""

    def __init__(self):
        self.outputs: dict[str, bool] = {}
        self.history: list[tuple[str, bool]] = []

    async def set_output(self, handle: str, on: bool) -> None:
        self.outputs[handle] = on
        self.history.append((handle, on))
