"""Data models for the Nest thermostat dashboard."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .const import (
    PENDING_COMMAND_TIMEOUT,
    PENDING_KIND_COOL,
    PENDING_KIND_HEAT,
    PENDING_KIND_MODE,
)


class ThermostatMode(StrEnum):
    """Thermostat operating modes reported by the device API."""

    HEAT = "HEAT"
    COOL = "COOL"
    HEATCOOL = "HEATCOOL"
    ECO = "ECO"
    OFF = "OFF"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Any) -> ThermostatMode:  # noqa: ANN401
        """Map an upstream mode string to a member, UNKNOWN if unrecognized."""
        if isinstance(value, str):
            try:
                return cls(value.upper())
            except ValueError:
                pass
        return cls.UNKNOWN


@dataclass
class Credential:
    """OAuth credential held by one authenticated session."""

    access_token: str
    refresh_token: str | None
    access_token_expires_at: datetime
    error: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """Return True if the access token must not be used without refreshing."""
        return now >= self.access_token_expires_at


@dataclass(frozen=True, slots=True)
class DeviceRecord:
    """Normalized thermostat state.

    Every reading is ``None`` when the device does not report it.
    """

    id: str
    display_name: str
    current_temperature_c: float | None
    target_temperature_c: float | None
    humidity_percent: float | None
    mode: ThermostatMode
    available_modes: tuple[ThermostatMode, ...]
    heat_setpoint_c: float | None = None
    cool_setpoint_c: float | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return the JSON shape shared by the REST and realtime channels."""
        return {
            "id": self.id,
            "name": self.display_name,
            "currentTemperatureC": self.current_temperature_c,
            "targetTemperatureC": self.target_temperature_c,
            "humidityPercent": self.humidity_percent,
            "mode": self.mode.value,
            "availableModes": [mode.value for mode in self.available_modes],
            "heatSetpointC": self.heat_setpoint_c,
            "coolSetpointC": self.cool_setpoint_c,
        }


@dataclass(frozen=True)
class CacheEntry:
    """Raw upstream device list together with the time it was fetched."""

    devices: tuple[dict[str, Any], ...]
    fetched_at: datetime


@dataclass
class PendingCommand:
    """A write that has been accepted upstream but not yet observed."""

    device_id: str
    kind: str
    requested_value: float | str
    issued_at: datetime

    def is_confirmed_by(self, record: DeviceRecord) -> bool:
        """Return True if the record shows the requested value."""
        if record.id != self.device_id:
            return False
        if self.kind == PENDING_KIND_MODE:
            return record.mode.value == self.requested_value
        if self.kind == PENDING_KIND_HEAT:
            observed = record.heat_setpoint_c
        elif self.kind == PENDING_KIND_COOL:
            observed = record.cool_setpoint_c
        else:
            return False
        if observed is None:
            return False
        return abs(observed - float(self.requested_value)) < 0.05  # noqa: PLR2004

    def is_expired(self, now: datetime) -> bool:
        """Return True once the command can be declared lost."""
        return now - self.issued_at >= PENDING_COMMAND_TIMEOUT

    def as_dict(self) -> dict[str, Any]:
        """Return the JSON shape used in realtime notifications."""
        return {
            "deviceId": self.device_id,
            "kind": self.kind,
            "requestedValue": self.requested_value,
            "issuedAt": self.issued_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class TemperatureReading:
    """One historical temperature sample."""

    timestamp: datetime
    temperature_c: float
    humidity_percent: float | None

    def as_dict(self) -> dict[str, Any]:
        """Return the JSON shape used by the history endpoint."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "temperature": self.temperature_c,
            "humidity": self.humidity_percent,
        }


@dataclass(frozen=True)
class DeviceUpdate:
    """A new reading for one device, from a poll or a push."""

    device_id: str
    record: DeviceRecord


@dataclass
class CommandOutcome:
    """Result of reconciling a pending command against a fresh read."""

    command: PendingCommand
    confirmed: bool


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)
