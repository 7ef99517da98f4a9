"""
Field Calibration Profiles

Several firmware variants encode the same logical field at different
offsets, widths and scale factors. Field layouts are therefore data:
a DeviceProfile maps every frame kind (and every response opcode) to a
FrameLayout of FieldEncoding entries. The decoder reads whatever the
selected profile says; nothing in the decode path hardcodes an offset.

Profiles can be saved to and loaded from JSON so that a layout found with
the field scanner can be reused:

{
    "name": "my-scooter",
    "description": "...",
    "frames": {
        "main_telemetry_8": {
            "authoritative": true,
            "fields": {"speed": {"offset": 2, "width": 2, "divisor": 100}}
        }
    },
    "responses": [
        {"opcode": 34, "subopcode": 1, "fields": {"battery_percent": {"offset": 5}}}
    ]
}
"""

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional, Union
import json
import logging
import struct

from .frames import FrameKind
from .protocol import (
    OPCODE_INFO,
    OPCODE_REALTIME,
    SUB_BATTERY,
    SUB_INFO,
    SUB_ODOMETER,
    SUB_TEMPERATURE,
)
from .telemetry import TelemetryField

logger = logging.getLogger(__name__)


class CalibrationError(Exception):
    """Invalid calibration profile."""
    pass


_STRUCT_CODES = {1: "B", 2: "H", 4: "I"}


@dataclass(frozen=True)
class FieldEncoding:
    """
    Location and scaling of one field inside a frame.

    decoded = (raw + bias) / divisor * multiplier

    raw_min/raw_max bound the accepted raw value; a raw value outside the
    window yields no field at all.
    """

    offset: int
    width: int = 1
    big_endian: bool = False
    signed: bool = False
    divisor: float = 1.0
    multiplier: float = 1.0
    bias: int = 0
    raw_min: Optional[int] = None
    raw_max: Optional[int] = None

    def __post_init__(self):
        if self.width not in _STRUCT_CODES:
            raise CalibrationError(f"Unsupported field width: {self.width}")
        if self.offset < 0:
            raise CalibrationError(f"Negative field offset: {self.offset}")
        if self.divisor == 0:
            raise CalibrationError("Field divisor must not be zero")

    @property
    def struct_format(self) -> str:
        code = _STRUCT_CODES[self.width]
        if self.signed:
            code = code.lower()
        return (">" if self.big_endian else "<") + code

    def read_raw(self, data: bytes, limit: Optional[int] = None) -> Optional[int]:
        """
        Read the raw integer value.

        Args:
            data: Frame bytes
            limit: Exclusive end of the readable region (default: len(data))

        Returns:
            Raw value, or None if the field does not fit in the region
        """
        end = len(data) if limit is None else min(limit, len(data))
        if self.offset + self.width > end:
            return None
        return struct.unpack_from(self.struct_format, data, self.offset)[0]

    def accepts(self, raw: int) -> bool:
        if self.raw_min is not None and raw < self.raw_min:
            return False
        if self.raw_max is not None and raw > self.raw_max:
            return False
        return True

    def scale(self, raw: int) -> float:
        return (raw + self.bias) / self.divisor * self.multiplier

    def decode(self, data: bytes, limit: Optional[int] = None) -> Optional[float]:
        """Read, range-check and scale the field. None when absent or rejected."""
        raw = self.read_raw(data, limit)
        if raw is None or not self.accepts(raw):
            return None
        return self.scale(raw)

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting defaults."""
        defaults = FieldEncoding(offset=0)
        result = {"offset": self.offset}
        for key, value in asdict(self).items():
            if key != "offset" and value != getattr(defaults, key):
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldEncoding":
        try:
            return cls(**data)
        except TypeError as e:
            raise CalibrationError(f"Invalid field encoding {data}: {e}") from e


@dataclass(frozen=True)
class FrameLayout:
    """Field encodings for one frame kind or response opcode."""

    fields: dict[TelemetryField, FieldEncoding] = field(default_factory=dict)
    authoritative: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "fields": {f.value: enc.to_dict() for f, enc in self.fields.items()},
        }
        if self.authoritative:
            result["authoritative"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FrameLayout":
        if not isinstance(data, dict):
            raise CalibrationError(f"Frame layout must be an object, got {type(data).__name__}")
        raw_fields = data.get("fields", {})
        if not isinstance(raw_fields, dict):
            raise CalibrationError(f"Layout fields must be an object, got {type(raw_fields).__name__}")

        fields = {}
        for name, encoding in raw_fields.items():
            try:
                telemetry_field = TelemetryField(name)
            except ValueError as e:
                raise CalibrationError(f"Unknown telemetry field: {name}") from e
            if telemetry_field.value_type not in (float, int):
                raise CalibrationError(f"Field {name} is not numeric")
            fields[telemetry_field] = FieldEncoding.from_dict(encoding)
        return cls(fields=fields, authoritative=bool(data.get("authoritative", False)))


ResponseKey = tuple[int, Optional[int]]


@dataclass(frozen=True)
class DeviceProfile:
    """
    Complete decode calibration for one device variant.

    responses are keyed by (opcode, subopcode); a subopcode of None
    matches any subopcode for that opcode.
    """

    name: str
    description: str = ""
    frames: dict[FrameKind, FrameLayout] = field(default_factory=dict)
    responses: dict[ResponseKey, FrameLayout] = field(default_factory=dict)

    def layout_for_frame(self, kind: FrameKind) -> Optional[FrameLayout]:
        return self.frames.get(kind)

    def layout_for_response(self, opcode: int, subopcode: Optional[int]) -> Optional[FrameLayout]:
        layout = self.responses.get((opcode, subopcode))
        if layout is None:
            layout = self.responses.get((opcode, None))
        return layout

    def with_frame_layout(self, kind: FrameKind, layout: FrameLayout, name: Optional[str] = None) -> "DeviceProfile":
        """Return a copy with one frame layout replaced."""
        frames = dict(self.frames)
        frames[kind] = layout
        return DeviceProfile(
            name=name or self.name,
            description=self.description,
            frames=frames,
            responses=dict(self.responses),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "frames": {kind.value: layout.to_dict() for kind, layout in self.frames.items()},
            "responses": [
                {"opcode": opcode, "subopcode": subopcode, **layout.to_dict()}
                for (opcode, subopcode), layout in self.responses.items()
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceProfile":
        if "name" not in data:
            raise CalibrationError("Profile has no name")

        raw_frames = data.get("frames", {})
        if not isinstance(raw_frames, dict):
            raise CalibrationError(f"Profile frames must be an object, got {type(raw_frames).__name__}")
        raw_responses = data.get("responses", [])
        if not isinstance(raw_responses, list):
            raise CalibrationError(f"Profile responses must be a list, got {type(raw_responses).__name__}")

        frames = {}
        for kind_name, layout in raw_frames.items():
            try:
                kind = FrameKind(kind_name)
            except ValueError as e:
                raise CalibrationError(f"Unknown frame kind: {kind_name}") from e
            if kind not in DECODABLE_FRAME_KINDS:
                raise CalibrationError(f"Frame kind {kind_name} carries no telemetry")
            frames[kind] = FrameLayout.from_dict(layout)

        responses = {}
        for entry in raw_responses:
            try:
                key = (int(entry["opcode"]), None if entry.get("subopcode") is None else int(entry["subopcode"]))
            except (KeyError, TypeError, ValueError) as e:
                raise CalibrationError(f"Invalid response entry {entry}: {e}") from e
            responses[key] = FrameLayout.from_dict(entry)

        return cls(
            name=str(data["name"]),
            description=str(data.get("description", "")),
            frames=frames,
            responses=responses,
        )


DECODABLE_FRAME_KINDS = (FrameKind.MAIN_TELEMETRY_8, FrameKind.EXTENDED_TELEMETRY_16)


# ============================================================================
# Built-in profiles
# ============================================================================

def _response_layouts() -> dict[ResponseKey, FrameLayout]:
    """55 AA response layouts shared by the built-in profiles."""
    return {
        (OPCODE_INFO, SUB_INFO): FrameLayout(fields={
            TelemetryField.BATTERY_PERCENT: FieldEncoding(offset=5, raw_max=100),
            TelemetryField.VOLTAGE: FieldEncoding(offset=6, width=2, divisor=100, raw_min=0, raw_max=10000),
        }),
        (OPCODE_INFO, SUB_BATTERY): FrameLayout(fields={
            TelemetryField.BATTERY_PERCENT: FieldEncoding(offset=5, raw_max=100),
        }),
        (OPCODE_INFO, SUB_ODOMETER): FrameLayout(fields={
            TelemetryField.ODOMETER_KM: FieldEncoding(offset=6, width=2, divisor=10),
        }),
        (OPCODE_INFO, SUB_TEMPERATURE): FrameLayout(fields={
            TelemetryField.TEMPERATURE: FieldEncoding(offset=5),
        }),
        (OPCODE_REALTIME, None): FrameLayout(fields={
            TelemetryField.SPEED: FieldEncoding(offset=5, width=2, divisor=100),
            TelemetryField.CURRENT: FieldEncoding(offset=7, width=2, divisor=100),
        }),
    }


DEFAULT_PROFILE = DeviceProfile(
    name="default",
    description="8 byte main frame speed u16LE@2 /100 x2.56, voltage u16LE@6 /10; 16 byte frame unmapped",
    frames={
        FrameKind.MAIN_TELEMETRY_8: FrameLayout(
            fields={
                TelemetryField.SPEED: FieldEncoding(
                    offset=2, width=2, divisor=100, multiplier=2.56, raw_min=1, raw_max=8000
                ),
                TelemetryField.VOLTAGE: FieldEncoding(
                    offset=6, width=2, divisor=10, raw_min=200, raw_max=700
                ),
            },
            authoritative=True,
        ),
    },
    responses=_response_layouts(),
)

LEGACY_PROFILE = DeviceProfile(
    name="m0robot-legacy",
    description="Earlier capture analysis: speed u16BE@1 x0.256, 16 byte frame with battery, temperature and odometer",
    frames={
        FrameKind.MAIN_TELEMETRY_8: FrameLayout(
            fields={
                TelemetryField.SPEED: FieldEncoding(
                    offset=1, width=2, big_endian=True, multiplier=0.256, raw_min=0, raw_max=8000
                ),
                TelemetryField.VOLTAGE: FieldEncoding(
                    offset=6, width=2, divisor=10, raw_min=200, raw_max=700
                ),
            },
            authoritative=True,
        ),
        FrameKind.EXTENDED_TELEMETRY_16: FrameLayout(fields={
            TelemetryField.SPEED: FieldEncoding(offset=1, width=2, big_endian=True, divisor=100, raw_max=8000),
            TelemetryField.BATTERY_PERCENT: FieldEncoding(offset=3, raw_max=100),
            TelemetryField.VOLTAGE: FieldEncoding(offset=4, width=2, divisor=100, raw_min=2000, raw_max=7000),
            TelemetryField.TEMPERATURE: FieldEncoding(offset=6),
            TelemetryField.ODOMETER_KM: FieldEncoding(offset=7, width=4, divisor=1000),
        }),
    },
    responses=_response_layouts(),
)

OFFSET40_PROFILE = DeviceProfile(
    name="m0robot-offset40",
    description="As default, temperature responses encoded as byte - 40",
    frames=dict(DEFAULT_PROFILE.frames),
    responses={
        **_response_layouts(),
        (OPCODE_INFO, SUB_TEMPERATURE): FrameLayout(fields={
            TelemetryField.TEMPERATURE: FieldEncoding(offset=5, bias=-40),
        }),
    },
)

BUILTIN_PROFILES: dict[str, DeviceProfile] = {
    profile.name: profile for profile in (DEFAULT_PROFILE, LEGACY_PROFILE, OFFSET40_PROFILE)
}


def available_profiles() -> list[str]:
    """Get names of built-in profiles."""
    return list(BUILTIN_PROFILES)


def get_profile(name: str) -> DeviceProfile:
    """
    Get a built-in profile by name.

    Raises:
        CalibrationError: If no such profile exists
    """
    try:
        return BUILTIN_PROFILES[name]
    except KeyError:
        raise CalibrationError(
            f"Unknown profile '{name}' (available: {', '.join(available_profiles())})"
        ) from None


def load_profile(path: Union[str, Path]) -> DeviceProfile:
    """
    Load a profile from a JSON file.

    Raises:
        CalibrationError: If the file cannot be read or is invalid
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CalibrationError(f"Cannot load profile {path}: {e}") from e

    if not isinstance(data, dict):
        raise CalibrationError(f"Profile {path} must contain a JSON object")

    profile = DeviceProfile.from_dict(data)
    logger.info(f"Loaded calibration profile '{profile.name}' from {path}")
    return profile


def save_profile(profile: DeviceProfile, path: Union[str, Path]) -> None:
    """Write a profile to a JSON file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(profile.to_dict(), f, indent=2)
    logger.info(f"Saved calibration profile '{profile.name}' to {path}")
