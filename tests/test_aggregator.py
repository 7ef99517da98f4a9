"""
Telemetry Aggregator Tests
"""

from unittest.mock import Mock

import pytest

from scooter_telemetry.communication.aggregator import (
    PlausibilityRules,
    TelemetryAggregator,
    merge,
)
from scooter_telemetry.communication.decoder import TelemetryDecoder
from scooter_telemetry.communication.frames import classify
from scooter_telemetry.communication.telemetry import PartialUpdate, TelemetryField, TelemetrySnapshot
from scooter_telemetry.diagnostics.context import DiagnosticContext
from scooter_telemetry.utils.error_handler import ErrorKind


def partial(authoritative=False, **values):
    update = PartialUpdate(authoritative=authoritative)
    for name, value in values.items():
        update = update.with_value(TelemetryField(name), value)
    return update


class TestMerge:
    """Test the pure merge function."""

    def test_accepts_value(self):
        """Accepted value marks the snapshot changed and connected."""
        snapshot, changed = merge(TelemetrySnapshot(), partial(battery_percent=42.0), now=100.0)
        assert changed
        assert snapshot.battery_percent == 42.0
        assert snapshot.last_update == 100.0
        assert snapshot.is_connected

    def test_idempotent(self):
        """Merging the same update twice changes nothing the second time."""
        update = partial(battery_percent=42.0, voltage=48.0)
        first, changed = merge(TelemetrySnapshot(), update, now=1.0)
        second, changed_again = merge(first, update, now=2.0)

        assert changed
        assert not changed_again
        assert second is first
        assert second.last_update == 1.0

    def test_empty_update(self):
        """An empty update is a no-op."""
        current = TelemetrySnapshot(speed=5.0)
        assert merge(current, PartialUpdate()) == (current, False)

    def test_implausible_rejected(self):
        """Values outside the plausibility range keep the previous value."""
        on_reject = Mock()
        current = TelemetrySnapshot(battery_percent=80.0, temperature=25.0)
        snapshot, changed = merge(
            current, partial(battery_percent=150.0, temperature=300.0), on_reject=on_reject
        )
        assert not changed
        assert snapshot.battery_percent == 80.0
        assert snapshot.temperature == 25.0
        assert on_reject.call_count == 2

    def test_custom_rules(self):
        """Plausibility ranges are configurable."""
        rules = PlausibilityRules(speed=(0.0, 25.0))
        snapshot, changed = merge(TelemetrySnapshot(), partial(speed=30.0), rules=rules)
        assert not changed

    def test_not_finite_rejected(self):
        """NaN never replaces a value."""
        snapshot, changed = merge(TelemetrySnapshot(voltage=48.0), partial(voltage=float("nan")))
        assert not changed
        assert snapshot.voltage == 48.0

    def test_ambiguous_zero_rejected(self):
        """A zero from a generic frame does not reset a known value."""
        current = TelemetrySnapshot(battery_percent=80.0)
        snapshot, changed = merge(current, partial(battery_percent=0.0))
        assert not changed
        assert snapshot.battery_percent == 80.0

    def test_authoritative_zero_accepted(self):
        """The main frame may report a zero."""
        current = TelemetrySnapshot(voltage=48.0)
        snapshot, changed = merge(current, partial(authoritative=True, voltage=0.0))
        assert changed
        assert snapshot.voltage == 0.0

    def test_zero_capable_fields(self):
        """Current and speed can legitimately be zero."""
        current = TelemetrySnapshot(voltage=50.0, current=4.0, power=200.0, speed=20.0)
        snapshot, changed = merge(current, partial(current=0.0, speed=0.0))
        assert changed
        assert snapshot.current == 0.0
        assert snapshot.speed == 0.0
        assert snapshot.power == 0.0

    def test_odometer_never_decreases(self):
        """Odometer below the current reading or the floor is rejected."""
        current = TelemetrySnapshot(odometer_km=100.0)
        assert not merge(current, partial(odometer_km=90.0))[1]
        assert merge(current, partial(odometer_km=100.5))[1]
        assert not merge(TelemetrySnapshot(), partial(odometer_km=50.0), odometer_floor=60.0)[1]

    def test_power_derived(self):
        """Power is |voltage x current|."""
        snapshot, _ = merge(TelemetrySnapshot(), partial(voltage=50.0, current=-4.0))
        assert snapshot.power == pytest.approx(200.0)

    def test_non_numeric_fields(self):
        """Version strings and code tuples merge without range checks."""
        snapshot, changed = merge(
            TelemetrySnapshot(),
            partial(firmware_version="1.4.2", error_codes=(0x53,)),
        )
        assert changed
        assert snapshot.firmware_version == "1.4.2"
        assert snapshot.error_codes == (0x53,)

    def test_decoded_voltage_out_of_window(self):
        """Main frame with voltageRaw=100 leaves an existing 48.0 V alone."""
        data = bytes([0x08, 0x00, 0xF4, 0x01, 0, 0, 0x64, 0x00])
        update = TelemetryDecoder().decode(classify(data), data)
        snapshot, _ = merge(TelemetrySnapshot(voltage=48.0), update)
        assert snapshot.voltage == 48.0
        assert snapshot.speed == pytest.approx(12.8)


class TestTelemetryAggregator:
    """Test the snapshot owner."""

    @pytest.fixture
    def diagnostics(self):
        return DiagnosticContext()

    @pytest.fixture
    def aggregator(self, diagnostics):
        return TelemetryAggregator(diagnostics=diagnostics)

    def test_apply(self, aggregator):
        """apply() replaces the snapshot when something changed."""
        assert aggregator.apply(partial(battery_percent=42.0), now=5.0)
        assert aggregator.snapshot.battery_percent == 42.0
        assert aggregator.change_count == 1

    def test_callbacks_only_on_change(self, aggregator):
        """Callbacks are not fired for no-op merges."""
        callback = Mock()
        aggregator.add_update_callback(callback)

        aggregator.apply(partial(speed=10.0))
        aggregator.apply(partial(speed=10.0))
        aggregator.apply(PartialUpdate())

        callback.assert_called_once()
        assert callback.call_args[0][0].speed == 10.0

    def test_callback_errors_contained(self, aggregator):
        """A failing callback does not stop the others."""
        failing = Mock(side_effect=RuntimeError("display gone"))
        working = Mock()
        aggregator.add_update_callback(failing)
        aggregator.add_update_callback(working)

        assert aggregator.apply(partial(speed=10.0))
        working.assert_called_once()

    def test_remove_callback(self, aggregator):
        """Removed callbacks are not called."""
        callback = Mock()
        aggregator.add_update_callback(callback)
        aggregator.remove_update_callback(callback)
        aggregator.apply(partial(speed=10.0))
        callback.assert_not_called()

    def test_callback_removed_during_notify(self, aggregator):
        """A callback unsubscribing itself does not skip the next one."""
        def one_shot(snapshot):
            aggregator.remove_update_callback(one_shot)

        following = Mock()
        aggregator.add_update_callback(one_shot)
        aggregator.add_update_callback(following)

        aggregator.apply(partial(speed=10.0))
        following.assert_called_once()

        aggregator.apply(partial(speed=12.0))
        assert following.call_count == 2

    def test_odometer_floor_persists(self, aggregator):
        """Even an authoritative zero cannot lower the odometer."""
        aggregator.apply(partial(odometer_km=356.0))
        assert not aggregator.apply(partial(authoritative=True, odometer_km=0.0))
        assert aggregator.snapshot.odometer_km == 356.0

    def test_rejections_recorded(self, aggregator, diagnostics):
        """Implausible values are recorded to diagnostics."""
        aggregator.apply(partial(battery_percent=101.0))
        assert diagnostics.error_count(ErrorKind.IMPLAUSIBLE_VALUE) == 1

    def test_mark_disconnected(self, aggregator):
        """Disconnect keeps values and clears is_connected."""
        callback = Mock()
        aggregator.apply(partial(battery_percent=42.0))
        aggregator.add_update_callback(callback)

        aggregator.mark_disconnected()
        aggregator.mark_disconnected()

        assert aggregator.snapshot.battery_percent == 42.0
        assert not aggregator.snapshot.is_connected
        callback.assert_called_once()

    def test_reset_session(self, aggregator):
        """A new session starts from an empty snapshot and no odometer floor."""
        aggregator.apply(partial(odometer_km=356.0))
        aggregator.reset_session()
        assert aggregator.snapshot == TelemetrySnapshot()
        assert aggregator.apply(partial(odometer_km=10.0))

    def test_set_versions(self, aggregator):
        """Version strings are stored."""
        aggregator.set_versions(firmware="2.1", bluetooth="5.0")
        assert aggregator.snapshot.firmware_version == "2.1"
        assert aggregator.snapshot.bluetooth_version == "5.0"
