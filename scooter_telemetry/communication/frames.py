"""
Frame classification for received notifications.

Each BLE notification is one frame. Frames are sorted into a closed set of
structural kinds by signature matching; the order of the checks matters
because some signatures overlap (a 16 byte frame may also start 55 AA).
"""

from dataclasses import dataclass, field
from enum import Enum
import re
import time

from .protocol import FRAME_HEADER, format_hex


class FrameKind(Enum):
    """Structural frame kinds."""
    EMPTY = "empty"
    KEEP_ALIVE = "keep_alive"
    DIAGNOSTIC_PLACEHOLDER = "diagnostic_placeholder"
    MAIN_TELEMETRY_8 = "main_telemetry_8"
    EXTENDED_TELEMETRY_16 = "extended_telemetry_16"
    PROTOCOL_RESPONSE = "protocol_response"
    SIMPLE_RESPONSE = "simple_response"
    UNKNOWN = "unknown"


KEEP_ALIVE_BYTES = b"\x00\x01"
MAIN_FRAME_SIZE = 8
MAIN_FRAME_MARKER = 0x08
EXTENDED_FRAME_SIZE = 16
EXTENDED_FRAME_MARKER = 0x5A
SIMPLE_RESPONSE_MARKER = 0xAA
PROTOCOL_RESPONSE_MIN_SIZE = 6
SIMPLE_RESPONSE_MIN_SIZE = 3
LONG_FRAME_SIZE = 20

_HEX_SEPARATORS = re.compile(r"[\s:,\-]+")


def classify(data: bytes) -> FrameKind:
    """
    Classify a received buffer.

    Total over every input, including the empty buffer.

    Args:
        data: Raw notification bytes

    Returns:
        The first matching FrameKind
    """
    size = len(data)
    if size == 0:
        return FrameKind.EMPTY
    if size == 2 and bytes(data) == KEEP_ALIVE_BYTES:
        return FrameKind.KEEP_ALIVE
    if size == 4 and data[2] == 0xFF and data[3] == 0xFF:
        return FrameKind.DIAGNOSTIC_PLACEHOLDER
    if size == MAIN_FRAME_SIZE and data[0] == MAIN_FRAME_MARKER:
        return FrameKind.MAIN_TELEMETRY_8
    if size == EXTENDED_FRAME_SIZE and data[0] == EXTENDED_FRAME_MARKER:
        return FrameKind.EXTENDED_TELEMETRY_16
    if size >= PROTOCOL_RESPONSE_MIN_SIZE and bytes(data[:2]) == FRAME_HEADER:
        return FrameKind.PROTOCOL_RESPONSE
    if size >= SIMPLE_RESPONSE_MIN_SIZE and data[0] == SIMPLE_RESPONSE_MARKER:
        return FrameKind.SIMPLE_RESPONSE
    return FrameKind.UNKNOWN


def describe_pattern(data: bytes) -> str:
    """
    Finer grained label used by the diagnostic frame history.

    Only for operator reports; the decode path uses classify().
    """
    kind = classify(data)
    if kind is not FrameKind.UNKNOWN:
        return kind.name
    if len(data) == 2 and bytes(data) == b"\x00\x00":
        return "NULL_RESPONSE"
    if all(b == 0 for b in data):
        return "ALL_ZEROS"
    if len(data) <= 3:
        return "SHORT_RESPONSE"
    if len(data) > LONG_FRAME_SIZE:
        return "LONG_FRAME"
    return "UNKNOWN_PATTERN"


@dataclass(frozen=True)
class RawFrame:
    """One received notification with its receipt time."""

    data: bytes
    received_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> FrameKind:
        return classify(self.data)

    @property
    def hex(self) -> str:
        return format_hex(self.data)

    def __len__(self) -> int:
        return len(self.data)

    @classmethod
    def from_hex(cls, text: str, received_at: float = 0.0) -> "RawFrame":
        """
        Parse a capture line such as "55 AA 03 22 01 2A 0A".

        Separators (spaces, tabs, colons, commas, dashes) and a 0x prefix
        on each byte are ignored, so "0x55, 0xAA, 0x01" parses as well.

        Raises:
            ValueError: If the text is not valid hex
        """
        tokens = _HEX_SEPARATORS.split(text.strip())
        cleaned = "".join(t[2:] if t[:2].lower() == "0x" else t for t in tokens)
        return cls(data=bytes.fromhex(cleaned), received_at=received_at)
