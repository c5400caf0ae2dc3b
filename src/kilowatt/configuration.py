"""Runtime configuration keys exposed through Get/ChangeConfiguration."""

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ocpp.v16.enums import ConfigurationStatus

from .repositories import ConfigurationRepository

logger = logging.getLogger(__name__)


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_seconds(value: str) -> int:
    seconds = int(value)
    if seconds < 0:
        raise ValueError(f"negative interval: {value!r}")
    return seconds


def parse_price(value: str) -> float:
    price = float(value)
    if price < 0:
        raise ValueError(f"negative price: {value!r}")
    return price


@dataclass(frozen=True)
class KeyDefinition:
    key: str
    default: str
    readonly: bool = False
    parse: Callable[[str], Any] = str


KEYS = (
    KeyDefinition("HeartbeatInterval", "60", parse=parse_seconds),
    KeyDefinition("MeterValueSampleInterval", "60", parse=parse_seconds),
    KeyDefinition("ConnectionTimeOut", "60", parse=parse_seconds),
    KeyDefinition("AllowOfflineTxForUnknownId", "false", parse=parse_bool),
    KeyDefinition("AuthorizationCacheEnabled", "true", parse=parse_bool),
    KeyDefinition("AuthorizeRemoteTxRequests", "false", parse=parse_bool),
    KeyDefinition("LocalAuthListEnabled", "true", parse=parse_bool),
    KeyDefinition("LocalPreAuthorize", "true", parse=parse_bool),
    KeyDefinition("PricePerKwh", "0", parse=parse_price),
    KeyDefinition("NumberOfConnectors", "1", readonly=True, parse=int),
    KeyDefinition(
        "SupportedFeatureProfiles",
        "Core,FirmwareManagement,LocalAuthListManagement,Reservation,RemoteTrigger",
        readonly=True,
    ),
    KeyDefinition("ChargePointVendor", "", readonly=True),
    KeyDefinition("ChargePointModel", "", readonly=True),
)

ChangeCallback = Callable[[Any], Awaitable[None] | None]


class ConfigurationStore:
    """
    Bounded key/value store behind GetConfiguration and ChangeConfiguration.

    Only keys in ``definitions`` exist. Read-only keys take their value from the static
    configuration at startup; writable keys start from their default (or a static
    override) and are replaced by whatever the central system last stored.
    """

    def __init__(
        self,
        repo: ConfigurationRepository | None = None,
        overrides: dict[str, str] | None = None,
        definitions: tuple[KeyDefinition, ...] = KEYS,
    ):
        self.repo = repo
        self.definitions = {d.key: d for d in definitions}
        self._values = {d.key: d.default for d in definitions}
        self._subscribers: dict[str, list[ChangeCallback]] = defaultdict(list)
        for key, value in (overrides or {}).items():
            if key not in self.definitions:
                logger.warning(f"Ignoring unknown configuration key {key}")
                continue
            self.definitions[key].parse(value)
            self._values[key] = value

    async def load(self) -> None:
        """Apply values previously stored by ChangeConfiguration."""
        if self.repo is None:
            return
        for key, value in (await self.repo.load()).items():
            definition = self.definitions.get(key)
            if definition is None or definition.readonly:
                continue
            try:
                definition.parse(value)
            except ValueError:
                logger.warning(f"Discarding stored value {value!r} for {key}")
                continue
            self._values[key] = value

    def get(self, key: str) -> Any:
        return self.definitions[key].parse(self._values[key])

    def get_raw(self, key: str) -> str:
        return self._values[key]

    def subscribe(self, key: str, callback: ChangeCallback) -> None:
        self._subscribers[key].append(callback)

    def entries(self, keys: list[str] | None = None) -> tuple[list[dict[str, Any]], list[str]]:
        """Return (known entries, unknown keys) for GetConfiguration."""
        requested = keys if keys else list(self.definitions)
        known, unknown = [], []
        for key in requested:
            definition = self.definitions.get(key)
            if definition is None:
                unknown.append(key)
                continue
            known.append(
                {"key": key, "readonly": definition.readonly, "value": self._values[key]}
            )
        return known, unknown

    async def change(self, key: str, value: str) -> ConfigurationStatus:
        definition = self.definitions.get(key)
        if definition is None:
            return ConfigurationStatus.not_supported
        if definition.readonly:
            return ConfigurationStatus.rejected
        try:
            parsed = definition.parse(value)
        except ValueError:
            return ConfigurationStatus.rejected

        self._values[key] = value
        if self.repo is not None:
            await self.repo.set(key, value)
        logger.info(
            f"Configuration {key} changed",
            extra={"event_type": "configuration_change", "event_data": {key: value}},
        )

        for callback in self._subscribers[key]:
            outcome = callback(parsed)
            if inspect.isawaitable(outcome):
                await outcome
        return ConfigurationStatus.accepted
