"""
Scooter Communication Package

Frame handling, decoding and state merging for scooter BLE telemetry.

Modules:
    protocol: Framing, checksum and command table
    frames: Frame classification
    telemetry: Snapshot and partial update data structures
    calibration: Per-device field encodings (built-in and JSON profiles)
    decoder: Frame -> partial update
    aggregator: Partial update -> snapshot, with plausibility checks
    transport_base: Abstract transport interface and mock transport
    ble_transport: Bluetooth LE transport (bleak)

Example usage:
    from scooter_telemetry.communication import TelemetryDecoder, TelemetryAggregator, classify

    decoder = TelemetryDecoder()
    aggregator = TelemetryAggregator()

    for data in notifications:
        aggregator.apply(decoder.decode(classify(data), data))
    print(f"Speed: {aggregator.snapshot.speed} km/h")
"""

from .protocol import (
    Command,
    FrameBuilder,
    ProtocolError,
    build_frame,
    validate_frame,
    xor_checksum,
)
from .frames import FrameKind, RawFrame, classify
from .telemetry import FieldUpdate, PartialUpdate, TelemetryField, TelemetrySnapshot
from .calibration import CalibrationError, DeviceProfile, FieldEncoding, FrameLayout, get_profile, load_profile
from .decoder import TelemetryDecoder
from .aggregator import PlausibilityRules, TelemetryAggregator, merge
from .transport_base import MockTransport, TransportBase, TransportError, TransportState
from .ble_transport import BleTransport

__all__ = [
    'Command',
    'FrameBuilder',
    'ProtocolError',
    'build_frame',
    'validate_frame',
    'xor_checksum',
    'FrameKind',
    'RawFrame',
    'classify',
    'FieldUpdate',
    'PartialUpdate',
    'TelemetryField',
    'TelemetrySnapshot',
    'CalibrationError',
    'DeviceProfile',
    'FieldEncoding',
    'FrameLayout',
    'get_profile',
    'load_profile',
    'TelemetryDecoder',
    'PlausibilityRules',
    'TelemetryAggregator',
    'merge',
    'MockTransport',
    'TransportBase',
    'TransportError',
    'TransportState',
    'BleTransport',
]
