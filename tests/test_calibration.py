"""
Calibration Profile Tests
"""

import json

import pytest

from scooter_telemetry.communication.calibration import (
    DEFAULT_PROFILE,
    CalibrationError,
    DeviceProfile,
    FieldEncoding,
    FrameLayout,
    available_profiles,
    get_profile,
    load_profile,
    save_profile,
)
from scooter_telemetry.communication.frames import FrameKind
from scooter_telemetry.communication.telemetry import TelemetryField


class TestFieldEncoding:
    """Test FieldEncoding reads and scaling."""

    def test_little_endian(self):
        """Default byte order is little-endian."""
        encoding = FieldEncoding(offset=1, width=2)
        assert encoding.read_raw(b"\x00\xF4\x01") == 500

    def test_big_endian(self):
        """Big-endian reads."""
        encoding = FieldEncoding(offset=1, width=2, big_endian=True)
        assert encoding.read_raw(b"\x00\x01\xF4") == 500

    def test_signed(self):
        """Signed reads."""
        assert FieldEncoding(offset=0, width=2, signed=True).read_raw(b"\xFE\xFF") == -2

    def test_out_of_range(self):
        """Fields past the data or the limit are absent."""
        encoding = FieldEncoding(offset=2, width=2)
        assert encoding.read_raw(b"\x00\x00\x01") is None
        assert encoding.read_raw(b"\x00\x00\x01\x02\x03", limit=3) is None
        assert encoding.read_raw(b"\x00\x00\x01\x02\x03", limit=4) == 0x0201

    def test_scale(self):
        """decoded = (raw + bias) / divisor * multiplier."""
        assert FieldEncoding(offset=0, divisor=100, multiplier=2.56).scale(500) == pytest.approx(12.8)
        assert FieldEncoding(offset=0, bias=-40).scale(75) == 35

    def test_raw_window(self):
        """Raw values outside [raw_min, raw_max] yield nothing."""
        encoding = FieldEncoding(offset=0, raw_min=10, raw_max=20)
        assert encoding.decode(b"\x09") is None
        assert encoding.decode(b"\x15") is None
        assert encoding.decode(b"\x0A") == 10
        assert encoding.decode(b"\x14") == 20

    def test_invalid(self):
        """Invalid encodings are rejected."""
        with pytest.raises(CalibrationError):
            FieldEncoding(offset=0, width=3)
        with pytest.raises(CalibrationError):
            FieldEncoding(offset=-1)
        with pytest.raises(CalibrationError):
            FieldEncoding(offset=0, divisor=0)

    def test_to_dict_omits_defaults(self):
        """Only non-default settings are serialized."""
        assert FieldEncoding(offset=2, width=2, divisor=100).to_dict() == {
            "offset": 2, "width": 2, "divisor": 100,
        }

    def test_from_dict_unknown_key(self):
        """Unknown keys raise CalibrationError."""
        with pytest.raises(CalibrationError):
            FieldEncoding.from_dict({"offset": 1, "scale": 2})


class TestDeviceProfile:
    """Test DeviceProfile lookup and serialization."""

    def test_builtin_profiles(self):
        """Built-in profiles are available by name."""
        assert {"default", "m0robot-legacy", "m0robot-offset40"} <= set(available_profiles())
        assert get_profile("default") is DEFAULT_PROFILE

    def test_unknown_profile(self):
        """Unknown names raise CalibrationError."""
        with pytest.raises(CalibrationError):
            get_profile("nope")

    def test_response_fallback(self):
        """A None subopcode entry matches any subopcode."""
        realtime = DEFAULT_PROFILE.layout_for_response(0x21, None)
        assert realtime is not None
        assert DEFAULT_PROFILE.layout_for_response(0x21, 0x05) is realtime
        assert DEFAULT_PROFILE.layout_for_response(0x22, 0x99) is None

    def test_default_extended_frame_unmapped(self):
        """The default profile has no layout for the 16 byte frame."""
        assert DEFAULT_PROFILE.layout_for_frame(FrameKind.EXTENDED_TELEMETRY_16) is None
        assert DEFAULT_PROFILE.layout_for_frame(FrameKind.MAIN_TELEMETRY_8).authoritative

    def test_with_frame_layout(self):
        """with_frame_layout returns a modified copy."""
        layout = FrameLayout(fields={TelemetryField.ODOMETER_KM: FieldEncoding(offset=9, width=4, divisor=100)})
        profile = DEFAULT_PROFILE.with_frame_layout(FrameKind.EXTENDED_TELEMETRY_16, layout, name="mine")

        assert profile.name == "mine"
        assert profile.layout_for_frame(FrameKind.EXTENDED_TELEMETRY_16) is layout
        assert DEFAULT_PROFILE.layout_for_frame(FrameKind.EXTENDED_TELEMETRY_16) is None

    def test_save_and_load(self, tmp_path):
        """A saved profile loads back equal."""
        path = tmp_path / "profiles" / "default.json"
        save_profile(DEFAULT_PROFILE, path)
        assert load_profile(path) == DEFAULT_PROFILE

    @pytest.mark.parametrize("data", [
        {"description": "no name"},
        {"name": "x", "frames": {"bogus": {}}},
        {"name": "x", "frames": {"keep_alive": {"fields": {}}}},
        {"name": "x", "frames": {"main_telemetry_8": {"fields": {"altitude": {"offset": 1}}}}},
        {"name": "x", "frames": {"main_telemetry_8": {"fields": {"firmware_version": {"offset": 1}}}}},
        {"name": "x", "responses": [{"subopcode": 1, "fields": {}}]},
        {"name": "x", "frames": [1]},
        {"name": "x", "frames": {"main_telemetry_8": [1]}},
        {"name": "x", "frames": {"main_telemetry_8": {"fields": []}}},
        {"name": "x", "frames": {"main_telemetry_8": {"fields": {"speed": [2, 2]}}}},
        {"name": "x", "responses": {"opcode": 34}},
        {"name": "x", "responses": [[34, 1]]},
        {"name": "x", "responses": [{"opcode": 34, "fields": []}]},
    ])
    def test_invalid_profiles(self, data):
        """Invalid profile data raises CalibrationError."""
        with pytest.raises(CalibrationError):
            DeviceProfile.from_dict(data)

    def test_load_errors(self, tmp_path):
        """Unreadable or malformed files raise CalibrationError."""
        with pytest.raises(CalibrationError):
            load_profile(tmp_path / "missing.json")

        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        with pytest.raises(CalibrationError):
            load_profile(broken)

        listing = tmp_path / "list.json"
        listing.write_text(json.dumps([1, 2]), encoding="utf-8")
        with pytest.raises(CalibrationError):
            load_profile(listing)

        wrong_shape = tmp_path / "frames.json"
        wrong_shape.write_text(json.dumps({"name": "x", "frames": [1]}), encoding="utf-8")
        with pytest.raises(CalibrationError):
            load_profile(wrong_shape)

    def test_load_custom_profile(self, tmp_path):
        """Hand-written JSON profile."""
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({
            "name": "custom",
            "frames": {
                "extended_telemetry_16": {
                    "fields": {"battery_percent": {"offset": 3, "raw_max": 100}},
                },
            },
            "responses": [
                {"opcode": 34, "subopcode": 26, "fields": {"temperature": {"offset": 5, "bias": -20, "divisor": 10}}},
            ],
        }), encoding="utf-8")

        profile = load_profile(path)
        layout = profile.layout_for_frame(FrameKind.EXTENDED_TELEMETRY_16)
        assert layout.fields[TelemetryField.BATTERY_PERCENT] == FieldEncoding(offset=3, raw_max=100)
        assert not layout.authoritative
        temperature = profile.layout_for_response(0x22, 0x1A).fields[TelemetryField.TEMPERATURE]
        assert temperature.scale(250) == 23.0
