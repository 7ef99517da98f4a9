"""
Scooter Controller Binary Protocol

Command / Response Frame Format:
┌──────┬──────┬────────┬────────┬────────────┬─────────────┬──────────┐
│ 0x55 │ 0xAA │ Length │ Opcode │ Subopcode? │   Payload   │ Checksum │
│ 1B   │ 1B   │ 1B     │ 1B     │ 1B         │ Variable    │ 1B       │
└──────┴──────┴────────┴────────┴────────────┴─────────────┴──────────┘

- Header: 0x55 0xAA (fixed)
- Length: opcode + subopcode (if any) + payload byte count
- Checksum: XOR of every byte from Length up to (not including) the checksum
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ProtocolError(Exception):
    """Raised when an outbound frame cannot be built."""
    pass


# Protocol constants
FRAME_HEADER = b"\x55\xAA"
FRAME_HEADER_SIZE = 2
FRAME_MIN_SIZE = 5  # Header(2) + Length(1) + Opcode(1) + Checksum(1)
CHECKSUM_MIN_SIZE = 4

OFFSET_LENGTH = 2
OFFSET_OPCODE = 3
OFFSET_SUBOPCODE = 4
OFFSET_DATA = 5

# Opcodes
OPCODE_REALTIME = 0x21
OPCODE_INFO = 0x22
OPCODE_BATTERY = 0x23

# Subopcodes for OPCODE_INFO
SUB_INFO = 0x01
SUB_BATTERY = 0x31
SUB_ODOMETER = 0x29
SUB_TEMPERATURE = 0x1A


def xor_checksum(frame: bytes) -> int:
    """
    Calculate the XOR checksum of a frame.

    The checksum covers bytes [2, len-1): the header and the trailing
    checksum byte itself are excluded.

    Args:
        frame: Complete frame bytes, checksum slot included

    Returns:
        8-bit checksum, 0 for frames shorter than 4 bytes
    """
    if len(frame) < CHECKSUM_MIN_SIZE:
        return 0
    checksum = 0
    for byte in frame[FRAME_HEADER_SIZE:-1]:
        checksum ^= byte
    return checksum


def validate_frame(frame: bytes) -> bool:
    """
    Check the trailing checksum byte of a frame.

    Args:
        frame: Complete frame bytes

    Returns:
        True if the frame is long enough and its checksum matches
    """
    if len(frame) < FRAME_MIN_SIZE:
        return False
    return frame[-1] == xor_checksum(frame)


def build_frame(opcode: int, subopcode: Optional[int] = None, payload: bytes = b"") -> bytes:
    """
    Build an outbound command frame.

    Args:
        opcode: Command opcode (0-255)
        subopcode: Optional subopcode (0-255)
        payload: Command payload bytes

    Returns:
        Encoded frame bytes including checksum

    Raises:
        ProtocolError: If a field does not fit its byte
    """
    if not 0 <= opcode <= 0xFF:
        raise ProtocolError(f"Opcode out of range: {opcode}")
    if subopcode is not None and not 0 <= subopcode <= 0xFF:
        raise ProtocolError(f"Subopcode out of range: {subopcode}")

    length = 1 + (1 if subopcode is not None else 0) + len(payload)
    if length > 0xFF:
        raise ProtocolError(f"Payload size {len(payload)} exceeds frame length field")

    frame = bytearray(FRAME_HEADER)
    frame.append(length)
    frame.append(opcode)
    if subopcode is not None:
        frame.append(subopcode)
    frame.extend(payload)
    frame.append(0)  # Checksum slot
    frame[-1] = xor_checksum(frame)
    return bytes(frame)


@dataclass(frozen=True)
class ResponseHeader:
    """Header fields of a 55 AA response frame."""

    length: int
    opcode: int
    subopcode: Optional[int]

    @property
    def data_offset(self) -> int:
        """Index of the first payload byte."""
        return OFFSET_DATA if self.subopcode is not None else OFFSET_SUBOPCODE


def parse_header(frame: bytes) -> Optional[ResponseHeader]:
    """
    Split the header of a response frame.

    The subopcode is only reported when the length byte says the frame
    carries one (length >= 2) and the byte is actually present before
    the checksum.

    Returns:
        ResponseHeader, or None if the frame is too short
    """
    if len(frame) < FRAME_MIN_SIZE or frame[:FRAME_HEADER_SIZE] != FRAME_HEADER:
        return None
    length = frame[OFFSET_LENGTH]
    opcode = frame[OFFSET_OPCODE]
    subopcode = None
    if length >= 2 and len(frame) > OFFSET_SUBOPCODE + 1:
        subopcode = frame[OFFSET_SUBOPCODE]
    return ResponseHeader(length=length, opcode=opcode, subopcode=subopcode)


@dataclass(frozen=True)
class CommandDescriptor:
    """An outbound request: opcode, optional subopcode and payload."""

    name: str
    opcode: int
    subopcode: Optional[int] = None
    payload: bytes = b""

    def encode(self) -> bytes:
        """Encode to wire bytes."""
        return build_frame(self.opcode, self.subopcode, self.payload)

    def __str__(self) -> str:
        sub = f"/0x{self.subopcode:02X}" if self.subopcode is not None else ""
        return f"{self.name}(0x{self.opcode:02X}{sub})"


class Command(Enum):
    """Polling request commands."""
    GET_INFO = "get_info"
    GET_BATTERY = "get_battery"
    GET_ODOMETER = "get_odometer"
    GET_REALTIME = "get_realtime"
    GET_TEMPERATURE = "get_temperature"
    GET_BATTERY_DEDICATED = "get_battery_dedicated"


COMMAND_TABLE: dict[Command, CommandDescriptor] = {
    Command.GET_INFO: CommandDescriptor("GetInfo", OPCODE_INFO, SUB_INFO),
    Command.GET_BATTERY: CommandDescriptor("GetBattery", OPCODE_INFO, SUB_BATTERY),
    Command.GET_ODOMETER: CommandDescriptor("GetOdometer", OPCODE_INFO, SUB_ODOMETER),
    Command.GET_REALTIME: CommandDescriptor("GetRealtime", OPCODE_REALTIME),
    Command.GET_TEMPERATURE: CommandDescriptor("GetTemperature", OPCODE_INFO, SUB_TEMPERATURE),
    # Some firmware answers battery requests on a dedicated opcode
    Command.GET_BATTERY_DEDICATED: CommandDescriptor("GetBattery", OPCODE_BATTERY),
}

POLLING_SEQUENCE: tuple[Command, ...] = (
    Command.GET_INFO,
    Command.GET_BATTERY,
    Command.GET_ODOMETER,
    Command.GET_REALTIME,
    Command.GET_TEMPERATURE,
)


class FrameBuilder:
    """Helper class to build the request frames of the polling sequence."""

    @staticmethod
    def get_info() -> bytes:
        """Create a GetInfo request."""
        return COMMAND_TABLE[Command.GET_INFO].encode()

    @staticmethod
    def get_battery(dedicated: bool = False) -> bytes:
        """
        Create a GetBattery request.

        Args:
            dedicated: Use the dedicated 0x23 opcode instead of 0x22/0x31
        """
        command = Command.GET_BATTERY_DEDICATED if dedicated else Command.GET_BATTERY
        return COMMAND_TABLE[command].encode()

    @staticmethod
    def get_odometer() -> bytes:
        """Create a GetOdometer request."""
        return COMMAND_TABLE[Command.GET_ODOMETER].encode()

    @staticmethod
    def get_realtime() -> bytes:
        """Create a GetRealtime request."""
        return COMMAND_TABLE[Command.GET_REALTIME].encode()

    @staticmethod
    def get_temperature() -> bytes:
        """Create a GetTemperature request."""
        return COMMAND_TABLE[Command.GET_TEMPERATURE].encode()


def format_hex(data: bytes) -> str:
    """Format bytes as space separated upper case hex."""
    return " ".join(f"{b:02X}" for b in data)
