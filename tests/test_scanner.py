"""
Heuristic Field Scanner Tests
"""

import struct

import pytest

from scooter_telemetry.communication.calibration import DEFAULT_PROFILE, FieldEncoding
from scooter_telemetry.communication.decoder import TelemetryDecoder
from scooter_telemetry.communication.frames import FrameKind, RawFrame
from scooter_telemetry.communication.telemetry import TelemetryField
from scooter_telemetry.diagnostics.scanner import (
    CalibrationTarget,
    MatchQuality,
    scan,
    scan_many,
    suggest_layout,
)


def extended_frame(odometer_raw=None, offset=9):
    """16 byte frame with a uint32LE odometer at the given offset."""
    frame = bytearray(16)
    frame[0] = 0x5A
    if odometer_raw is not None:
        struct.pack_into("<I", frame, offset, odometer_raw)
    return bytes(frame)


class TestScan:
    """Test single-frame scanning."""

    def test_odometer_exact(self):
        """uint32LE 35600 at offset 5 matches an odometer of 356.00 km."""
        frame = bytearray(16)
        struct.pack_into("<I", frame, 5, 35600)

        results = scan(bytes(frame), CalibrationTarget(odometer_km=356.00))
        best = results[TelemetryField.ODOMETER_KM][0]
        assert best.offset == 5
        assert best.width == 4
        assert best.quality is MatchQuality.EXACT
        assert best.decoded_value == pytest.approx(356.0)

    def test_exact_ranked_before_near(self):
        """Exact matches come first, then nearest."""
        frame = bytes([0, 0, 0, 84, 0, 0, 0, 83, 0, 0])
        candidates = scan(frame, CalibrationTarget(battery_percent=84))[TelemetryField.BATTERY_PERCENT]

        assert [(c.offset, c.quality) for c in candidates] == [
            (3, MatchQuality.EXACT),
            (7, MatchQuality.NEAR),
        ]
        assert candidates[1].distance == 1

    def test_voltage_window(self):
        """Voltage is searched as a 2 byte value x10."""
        frame = bytes([0x00, 0x00, 0xFC, 0x01, 0x00])
        candidate = scan(frame, CalibrationTarget(voltage=50.8))[TelemetryField.VOLTAGE][0]
        assert (candidate.offset, candidate.width, candidate.raw_value) == (2, 2, 508)
        assert candidate.decoded_value == pytest.approx(50.8)

    def test_speed_window(self):
        """Speed is searched as a 2 byte value x100."""
        frame = bytes([0x08, 0x00, 0xF4, 0x01, 0, 0, 0, 0])
        candidate = scan(frame, CalibrationTarget(speed=5.0))[TelemetryField.SPEED][0]
        assert candidate.offset == 2
        assert candidate.quality is MatchQuality.EXACT

    def test_no_match_omitted(self):
        """Fields without candidates are left out."""
        results = scan(bytes(8), CalibrationTarget(battery_percent=84, temperature=30))
        assert results == {}

    def test_no_targets(self):
        """Without reference values nothing is searched."""
        assert scan(bytes([84] * 8), CalibrationTarget()) == {}

    def test_raw_frame_input(self):
        """RawFrame input is accepted."""
        results = scan(RawFrame(bytes([0, 30, 0])), CalibrationTarget(temperature=30))
        assert results[TelemetryField.TEMPERATURE][0].offset == 1

    def test_frame_shorter_than_window(self):
        """Short frames have no 4 byte windows."""
        assert scan(b"\x01\x02", CalibrationTarget(odometer_km=1.0)) == {}


class TestScanMany:
    """Test cross-frame tallies and recommendations."""

    def test_stable_offset(self):
        """Offset matching in most frames is reported stable."""
        frames = [extended_frame(35600 + i * 10) for i in range(9)]
        frames.append(extended_frame(35600, offset=3))

        report = scan_many(frames, CalibrationTarget(odometer_km=356.0))

        best = report.best(TelemetryField.ODOMETER_KM)
        assert (best.offset, best.width, best.hits, best.exact_hits) == (9, 4, 9, 1)
        assert report.recommendations == ["odometer stable at offset 9 across 9/10 frames"]

    def test_frame_size_filter(self):
        """Frames of other sizes are skipped when a size is given."""
        frames = [extended_frame(35600), bytes(8), extended_frame(35600)]
        report = scan_many(frames, CalibrationTarget(odometer_km=356.0), frame_size=16)
        assert report.frame_count == 2
        assert report.frame_sizes == {16: 2}

    def test_ambiguous(self):
        """Equal tallies below the stable ratio are reported as ambiguous."""
        frames = [bytes([0, 0, 50, 0, 0, 0, 50, 0])] + [bytes(8)] * 3
        report = scan_many(frames, CalibrationTarget(battery_percent=50))
        assert report.recommendations == ["battery ambiguous: offsets 2 and 6 tie at 1/4 frames"]

    def test_possible(self):
        """A leading but unstable offset asks for more frames."""
        frames = [bytes([0, 0, 50, 0])] * 2 + [bytes(4)] * 2
        report = scan_many(frames, CalibrationTarget(battery_percent=50))
        assert report.recommendations == ["battery possibly at offset 2 across 2/4 frames, capture more frames"]

    def test_not_found(self):
        """No candidate at all."""
        report = scan_many([bytes(8)] * 3, CalibrationTarget(odometer_km=356.0))
        assert report.recommendations == ["odometer not found in 3 frames, check the reference value"]
        assert report.best(TelemetryField.ODOMETER_KM) is None

    def test_no_frames(self):
        """Empty input."""
        report = scan_many([], CalibrationTarget(battery_percent=50))
        assert report.frame_count == 0
        assert report.recommendations == ["battery: no frames to scan"]

    def test_offset_counted_once_per_frame(self):
        """A window matching twice in one frame counts once."""
        frames = [bytes([50, 50])]
        report = scan_many(frames, CalibrationTarget(battery_percent=50))
        assert all(t.hits == 1 for t in report.tallies[TelemetryField.BATTERY_PERCENT])


class TestSuggestLayout:
    """Test layout proposals from scan reports."""

    def test_stable_fields_only(self):
        """Only stable offsets become field encodings."""
        frames = []
        for i in range(10):
            frame = bytearray(extended_frame(35600 + i))
            frame[3] = 80 if i < 5 else 0
            frames.append(bytes(frame))

        report = scan_many(frames, CalibrationTarget(odometer_km=356.0, battery_percent=80))
        layout = suggest_layout(report)

        assert layout.fields == {
            TelemetryField.ODOMETER_KM: FieldEncoding(offset=9, width=4, divisor=100),
        }

    def test_suggested_layout_decodes(self):
        """A profile built from the suggestion decodes the scanned field."""
        frames = [extended_frame(35600)] * 5
        layout = suggest_layout(scan_many(frames, CalibrationTarget(odometer_km=356.0)))
        profile = DEFAULT_PROFILE.with_frame_layout(FrameKind.EXTENDED_TELEMETRY_16, layout)

        kind, update = TelemetryDecoder(profile).decode_frame(extended_frame(35650))
        assert kind is FrameKind.EXTENDED_TELEMETRY_16
        assert update.get(TelemetryField.ODOMETER_KM) == pytest.approx(356.5)

    def test_empty_report(self):
        """No frames, no fields."""
        assert suggest_layout(scan_many([], CalibrationTarget(odometer_km=1.0))).fields == {}
