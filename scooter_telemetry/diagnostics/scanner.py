"""
Heuristic Field Scanner

Operator tool for mapping an unknown frame layout. Given frames captured
while the true values are known (read from the scooter dashboard or the
vendor app), it lists every byte window whose value equals or approaches
a reference value, then tallies how often each offset matches across many
frames to separate a stable layout from coincidences.

Windows tested per offset:
- 1 byte:   battery percent, temperature
- 2 bytes:  voltage x10, speed x100 (little-endian)
- 4 bytes:  odometer x100 (decameters), total ride time in minutes

Example usage:
    target = CalibrationTarget(odometer_km=324.8, battery_percent=84, voltage=50.8)
    report = scan_many(frames, target)
    for line in report.recommendations:
        print(line)
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional, Union
import logging
import struct

from ..communication.calibration import FieldEncoding, FrameLayout
from ..communication.frames import RawFrame
from ..communication.telemetry import TelemetryField

logger = logging.getLogger(__name__)


class MatchQuality(Enum):
    """How closely a window matched its reference value."""
    EXACT = "exact"
    NEAR = "near"


@dataclass(frozen=True)
class _Probe:
    """How one field is searched: window width, raw scale and tolerance."""
    field: TelemetryField
    width: int
    scale: float
    tolerance: float


@dataclass
class CalibrationTarget:
    """
    Operator-supplied reference values for one capture session.

    Tolerances are in raw units (after scaling), e.g. an odometer
    tolerance of 1600 means +/- 16 km.
    """
    odometer_km: Optional[float] = None
    battery_percent: Optional[float] = None
    voltage: Optional[float] = None
    temperature: Optional[float] = None
    speed: Optional[float] = None
    total_ride_minutes: Optional[int] = None

    battery_tolerance: int = 2
    temperature_tolerance: int = 3
    voltage_tolerance: int = 10      # 1.0 V
    speed_tolerance: int = 50        # 0.5 km/h
    odometer_tolerance: int = 1600   # 16 km
    ride_time_tolerance: int = 60    # 1 hour

    def probes(self) -> list[tuple[_Probe, float]]:
        """Active (probe, reference raw value) pairs."""
        probes = []
        if self.battery_percent is not None:
            probes.append((_Probe(TelemetryField.BATTERY_PERCENT, 1, 1, self.battery_tolerance), self.battery_percent))
        if self.temperature is not None:
            probes.append((_Probe(TelemetryField.TEMPERATURE, 1, 1, self.temperature_tolerance), self.temperature))
        if self.voltage is not None:
            probes.append((_Probe(TelemetryField.VOLTAGE, 2, 10, self.voltage_tolerance), self.voltage))
        if self.speed is not None:
            probes.append((_Probe(TelemetryField.SPEED, 2, 100, self.speed_tolerance), self.speed))
        if self.odometer_km is not None:
            probes.append((_Probe(TelemetryField.ODOMETER_KM, 4, 100, self.odometer_tolerance), self.odometer_km))
        if self.total_ride_minutes is not None:
            probes.append((_Probe(TelemetryField.TOTAL_RIDE_TIME, 4, 1, self.ride_time_tolerance), self.total_ride_minutes))
        return probes


@dataclass(frozen=True)
class Candidate:
    """One byte window that plausibly encodes a field."""
    field: TelemetryField
    offset: int
    width: int
    raw_value: int
    decoded_value: float
    quality: MatchQuality
    distance: int

    def __str__(self) -> str:
        return (f"{self.field.value} @{self.offset} ({self.width}B) = {self.decoded_value:g} "
                f"[{self.quality.value}, raw {self.raw_value}]")


_WIDTH_FORMATS = {1: "<B", 2: "<H", 4: "<I"}

FrameInput = Union[bytes, bytearray, RawFrame]


def _frame_bytes(frame: FrameInput) -> bytes:
    return frame.data if isinstance(frame, RawFrame) else bytes(frame)


def scan(frame: FrameInput, target: CalibrationTarget) -> dict[TelemetryField, list[Candidate]]:
    """
    Scan one frame for windows matching the target values.

    Args:
        frame: Captured frame
        target: Known reference values

    Returns:
        Candidates per field, exact matches first, then by distance
        (fields without any candidate are omitted)
    """
    data = _frame_bytes(frame)
    results: dict[TelemetryField, list[Candidate]] = {}

    for probe, reference in target.probes():
        expected = int(round(reference * probe.scale))
        fmt = _WIDTH_FORMATS[probe.width]
        candidates = []
        for offset in range(len(data) - probe.width + 1):
            raw = struct.unpack_from(fmt, data, offset)[0]
            distance = abs(raw - expected)
            if distance == 0:
                quality = MatchQuality.EXACT
            elif distance <= probe.tolerance:
                quality = MatchQuality.NEAR
            else:
                continue
            candidates.append(Candidate(
                field=probe.field,
                offset=offset,
                width=probe.width,
                raw_value=raw,
                decoded_value=raw / probe.scale,
                quality=quality,
                distance=distance,
            ))
        if candidates:
            candidates.sort(key=lambda c: (c.quality is not MatchQuality.EXACT, c.distance, c.offset))
            results[probe.field] = candidates

    return results


@dataclass
class OffsetTally:
    """How often one (offset, width) matched a field across frames."""
    offset: int
    width: int
    hits: int = 0
    exact_hits: int = 0


@dataclass
class ScanReport:
    """Cross-frame scan result."""
    frame_count: int
    frame_sizes: dict[int, int] = field(default_factory=dict)
    tallies: dict[TelemetryField, list[OffsetTally]] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)

    def best(self, telemetry_field: TelemetryField) -> Optional[OffsetTally]:
        tallies = self.tallies.get(telemetry_field)
        return tallies[0] if tallies else None


STABLE_RATIO = 0.8


def scan_many(
    frames: Iterable[FrameInput],
    target: CalibrationTarget,
    frame_size: Optional[int] = None,
) -> ScanReport:
    """
    Scan many frames and rank offsets by how often they match.

    Args:
        frames: Captured frames
        target: Known reference values
        frame_size: Only consider frames of this length (layouts differ
            between frame sizes, so mixing them dilutes the tallies)

    Returns:
        ScanReport with per-field tallies and recommendations
    """
    counts: dict[TelemetryField, dict[tuple[int, int], OffsetTally]] = defaultdict(dict)
    sizes: dict[int, int] = defaultdict(int)
    frame_count = 0

    for frame in frames:
        data = _frame_bytes(frame)
        if frame_size is not None and len(data) != frame_size:
            continue
        frame_count += 1
        sizes[len(data)] += 1
        for telemetry_field, candidates in scan(data, target).items():
            seen = set()
            for candidate in candidates:
                key = (candidate.offset, candidate.width)
                if key in seen:
                    continue
                seen.add(key)
                tally = counts[telemetry_field].setdefault(key, OffsetTally(candidate.offset, candidate.width))
                tally.hits += 1
                if candidate.quality is MatchQuality.EXACT:
                    tally.exact_hits += 1

    report = ScanReport(frame_count=frame_count, frame_sizes=dict(sizes))
    for probe, _ in target.probes():
        tallies = sorted(
            counts.get(probe.field, {}).values(),
            key=lambda t: (-t.hits, -t.exact_hits, t.offset),
        )
        report.tallies[probe.field] = tallies
        report.recommendations.append(_recommend(probe.field, tallies, frame_count))

    logger.info(f"Scanned {frame_count} frames for {len(report.tallies)} fields")
    return report


def _recommend(telemetry_field: TelemetryField, tallies: list[OffsetTally], frame_count: int) -> str:
    name = _FIELD_LABELS.get(telemetry_field, telemetry_field.value)
    if frame_count == 0:
        return f"{name}: no frames to scan"
    if not tallies:
        return f"{name} not found in {frame_count} frames, check the reference value"

    best = tallies[0]
    where = f"offset {best.offset} across {best.hits}/{frame_count} frames"
    if best.hits / frame_count >= STABLE_RATIO:
        return f"{name} stable at {where}"
    if len(tallies) > 1 and tallies[1].hits == best.hits:
        return f"{name} ambiguous: offsets {best.offset} and {tallies[1].offset} tie at {best.hits}/{frame_count} frames"
    return f"{name} possibly at {where}, capture more frames"


_FIELD_LABELS = {
    TelemetryField.BATTERY_PERCENT: "battery",
    TelemetryField.TOTAL_RIDE_TIME: "ride time",
    TelemetryField.ODOMETER_KM: "odometer",
}

# Scale of the searched raw value -> divisor for a FieldEncoding
_LAYOUT_DIVISORS = {
    TelemetryField.BATTERY_PERCENT: 1,
    TelemetryField.TEMPERATURE: 1,
    TelemetryField.VOLTAGE: 10,
    TelemetryField.SPEED: 100,
    TelemetryField.ODOMETER_KM: 100,
}


def suggest_layout(report: ScanReport, min_ratio: float = STABLE_RATIO) -> FrameLayout:
    """
    Propose a frame layout from the stable offsets of a report.

    Only fields whose best offset matched in at least min_ratio of the
    frames are included. The result is a proposal for the operator to
    save in a calibration profile, never applied automatically.
    """
    fields = {}
    if report.frame_count == 0:
        return FrameLayout(fields=fields)
    for telemetry_field, divisor in _LAYOUT_DIVISORS.items():
        best = report.best(telemetry_field)
        if best is None or best.hits / report.frame_count < min_ratio:
            continue
        fields[telemetry_field] = FieldEncoding(offset=best.offset, width=best.width, divisor=divisor)
    return FrameLayout(fields=fields)
