"""
Scooter Telemetry Data Structures

TelemetrySnapshot is the canonical vehicle state. It is owned by the
aggregator; every other component produces PartialUpdate values that
carry only the fields one frame can speak to.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterator, Optional, Union


class ScooterErrorCode(IntEnum):
    """Controller error codes shown as E53..E59 on the dashboard."""
    E53_OVERVOLTAGE = 0x53
    E54_UNDERVOLTAGE = 0x54
    E55_CONTROLLER_TEMP = 0x55
    E56_SHORT_CIRCUIT = 0x56
    E57_BRAKE_HANDLE = 0x57
    E58_BATTERY_TEMP = 0x58
    E59_MOTOR_FAULT = 0x59

    @property
    def description(self) -> str:
        return _ERROR_DESCRIPTIONS[self]


_ERROR_DESCRIPTIONS = {
    ScooterErrorCode.E53_OVERVOLTAGE: "Over-voltage alarm",
    ScooterErrorCode.E54_UNDERVOLTAGE: "Under-voltage alarm",
    ScooterErrorCode.E55_CONTROLLER_TEMP: "Controller over-temperature",
    ScooterErrorCode.E56_SHORT_CIRCUIT: "Short circuit protection",
    ScooterErrorCode.E57_BRAKE_HANDLE: "Brake handle malfunction",
    ScooterErrorCode.E58_BATTERY_TEMP: "Battery over-temperature",
    ScooterErrorCode.E59_MOTOR_FAULT: "Motor malfunction",
}


def describe_error_code(code: int) -> str:
    """Get a readable description for a raw controller error code."""
    try:
        error = ScooterErrorCode(code)
    except ValueError:
        return f"Unknown error (0x{code:02X})"
    return f"E{code:02X}: {error.description}"


def format_ride_time(total_seconds: int) -> str:
    """Format a duration as "{h}H {m}M {s}S"."""
    total_seconds = max(0, int(total_seconds))
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}H {minutes}M {seconds}S"


@dataclass(frozen=True)
class TelemetrySnapshot:
    """
    Canonical scooter state.

    Units: speed km/h, voltage V, current A (signed), power W,
    temperatures degrees C, distances km, total_ride_time seconds.
    """

    speed: float = 0.0
    battery_percent: float = 0.0
    voltage: float = 0.0
    current: float = 0.0
    power: float = 0.0
    temperature: float = 0.0
    battery_temperature: float = 0.0
    odometer_km: float = 0.0
    trip_distance_km: float = 0.0
    total_ride_time: int = 0
    error_codes: tuple[int, ...] = ()
    warning_codes: tuple[int, ...] = ()
    firmware_version: str = ""
    bluetooth_version: str = "N/A"
    last_update: Optional[float] = None
    is_connected: bool = False

    @property
    def ride_time_str(self) -> str:
        return format_ride_time(self.total_ride_time)

    @property
    def has_errors(self) -> bool:
        return bool(self.error_codes)

    def get_error_descriptions(self) -> list[str]:
        """Get human-readable descriptions of active error codes."""
        return [describe_error_code(code) for code in self.error_codes]


class TelemetryField(Enum):
    """Decodable snapshot fields. Values are the snapshot attribute names."""
    SPEED = "speed"
    BATTERY_PERCENT = "battery_percent"
    VOLTAGE = "voltage"
    CURRENT = "current"
    TEMPERATURE = "temperature"
    BATTERY_TEMPERATURE = "battery_temperature"
    ODOMETER_KM = "odometer_km"
    TRIP_DISTANCE_KM = "trip_distance_km"
    TOTAL_RIDE_TIME = "total_ride_time"
    ERROR_CODES = "error_codes"
    WARNING_CODES = "warning_codes"
    FIRMWARE_VERSION = "firmware_version"

    @property
    def value_type(self) -> type:
        return _FIELD_TYPES.get(self, float)


_FIELD_TYPES = {
    TelemetryField.TOTAL_RIDE_TIME: int,
    TelemetryField.ERROR_CODES: tuple,
    TelemetryField.WARNING_CODES: tuple,
    TelemetryField.FIRMWARE_VERSION: str,
}

FieldValue = Union[float, int, str, tuple]


@dataclass(frozen=True)
class FieldUpdate:
    """One decoded field and its typed value."""

    field: TelemetryField
    value: FieldValue

    def __post_init__(self):
        expected = self.field.value_type
        value = self.value
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            object.__setattr__(self, "value", float(value))
        elif not isinstance(value, expected) or isinstance(value, bool):
            raise TypeError(
                f"{self.field.name} expects {expected.__name__}, got {type(value).__name__}"
            )


@dataclass(frozen=True)
class PartialUpdate:
    """
    Sparse set of decoded fields from one frame.

    A field that a frame does not speak to is absent, never zero.
    authoritative marks updates from the main telemetry frame, which may
    legitimately report a field as zero.
    """

    updates: tuple[FieldUpdate, ...] = ()
    authoritative: bool = False

    def with_value(self, telemetry_field: TelemetryField, value: FieldValue) -> "PartialUpdate":
        """Return a copy with one field set (replacing any earlier value)."""
        kept = tuple(u for u in self.updates if u.field is not telemetry_field)
        return PartialUpdate(
            updates=kept + (FieldUpdate(telemetry_field, value),),
            authoritative=self.authoritative,
        )

    def get(self, telemetry_field: TelemetryField, default: Optional[FieldValue] = None):
        for update in self.updates:
            if update.field is telemetry_field:
                return update.value
        return default

    @property
    def fields(self) -> list[TelemetryField]:
        return [u.field for u in self.updates]

    @property
    def is_empty(self) -> bool:
        return not self.updates

    def __contains__(self, telemetry_field: TelemetryField) -> bool:
        return any(u.field is telemetry_field for u in self.updates)

    def __iter__(self) -> Iterator[FieldUpdate]:
        return iter(self.updates)

    def __len__(self) -> int:
        return len(self.updates)


EMPTY_UPDATE = PartialUpdate()
