"""
Telemetry Aggregator

Merges decoder PartialUpdates into the canonical TelemetrySnapshot.

Rules applied per field:
- the value must fall inside the field's plausibility range;
- the odometer never decreases within a session;
- a zero only replaces a previously set value when the field can really
  be zero (current, speed) or the update comes from an authoritative frame;
- power is derived as |voltage x current|.

merge() reports changed=False for a no-op so callers never emit spurious
"updated" notifications.
"""

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Optional
import logging
import math
import threading
import time

from .telemetry import PartialUpdate, TelemetryField, TelemetrySnapshot
from ..utils.error_handler import ErrorKind

if TYPE_CHECKING:
    from ..diagnostics.context import DiagnosticContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlausibilityRules:
    """Accepted value ranges (inclusive) for numeric fields."""
    speed: tuple[float, float] = (0.0, 120.0)
    battery_percent: tuple[float, float] = (0.0, 100.0)
    voltage: tuple[float, float] = (0.0, 100.0)
    current: tuple[float, float] = (-200.0, 200.0)
    temperature: tuple[float, float] = (-40.0, 150.0)
    battery_temperature: tuple[float, float] = (-40.0, 150.0)
    odometer_km: tuple[float, float] = (0.0, 1_000_000.0)
    trip_distance_km: tuple[float, float] = (0.0, 10_000.0)
    total_ride_time: tuple[float, float] = (0.0, 100_000_000.0)

    def range_for(self, telemetry_field: TelemetryField) -> Optional[tuple[float, float]]:
        return getattr(self, telemetry_field.value, None)


DEFAULT_RULES = PlausibilityRules()

# Fields whose true value can be zero while the scooter is connected
ZERO_CAPABLE_FIELDS = frozenset({TelemetryField.CURRENT, TelemetryField.SPEED})

RejectCallback = Callable[[TelemetryField, object, str], None]


def merge(
    current: TelemetrySnapshot,
    partial: PartialUpdate,
    now: Optional[float] = None,
    rules: PlausibilityRules = DEFAULT_RULES,
    odometer_floor: Optional[float] = None,
    on_reject: Optional[RejectCallback] = None,
) -> tuple[TelemetrySnapshot, bool]:
    """
    Merge a partial update into a snapshot.

    Args:
        current: Snapshot before the update
        partial: Decoded fields
        now: Timestamp for last_update (default: time.time())
        rules: Plausibility ranges
        odometer_floor: Lowest odometer reading allowed this session
            (default: the current snapshot value)
        on_reject: Called with (field, value, reason) for each rejected value

    Returns:
        Tuple of (next snapshot, changed). When nothing changed, the
        current snapshot object itself is returned.
    """
    changes: dict[str, object] = {}

    for update in partial:
        telemetry_field = update.field
        value = update.value
        reason = _check_value(current, telemetry_field, value, partial.authoritative, rules, odometer_floor)
        if reason is not None:
            if on_reject is not None:
                on_reject(telemetry_field, value, reason)
            continue
        if getattr(current, telemetry_field.value) != value:
            changes[telemetry_field.value] = value

    if not changes:
        return current, False

    voltage = changes.get("voltage", current.voltage)
    amps = changes.get("current", current.current)
    power = abs(voltage * amps)
    if power != current.power:
        changes["power"] = power

    changes["last_update"] = time.time() if now is None else now
    changes["is_connected"] = True
    return replace(current, **changes), True


def _check_value(
    current: TelemetrySnapshot,
    telemetry_field: TelemetryField,
    value,
    authoritative: bool,
    rules: PlausibilityRules,
    odometer_floor: Optional[float],
) -> Optional[str]:
    """Return a rejection reason, or None if the value is acceptable."""
    if telemetry_field.value_type not in (float, int):
        return None

    if isinstance(value, float) and not math.isfinite(value):
        return "not a finite number"

    bounds = rules.range_for(telemetry_field)
    if bounds is not None and not bounds[0] <= value <= bounds[1]:
        return f"outside plausible range {bounds[0]}..{bounds[1]}"

    if value == 0 and not authoritative and telemetry_field not in ZERO_CAPABLE_FIELDS:
        if getattr(current, telemetry_field.value) != 0:
            return "ambiguous zero would reset a known value"

    if telemetry_field is TelemetryField.ODOMETER_KM:
        floor = current.odometer_km if odometer_floor is None else odometer_floor
        if value < floor:
            return f"odometer would decrease below {floor}"

    return None


class TelemetryAggregator:
    """
    Owner of the canonical snapshot.

    The snapshot is replaced atomically under a lock, so readers on other
    threads always see a consistent state. Update callbacks fire only when
    a merge actually changed something.
    """

    def __init__(
        self,
        rules: PlausibilityRules = DEFAULT_RULES,
        diagnostics: Optional["DiagnosticContext"] = None,
    ):
        self._rules = rules
        self._diagnostics = diagnostics
        self._lock = threading.RLock()
        self._snapshot = TelemetrySnapshot()
        self._odometer_floor = 0.0
        self._update_callbacks: list[Callable[[TelemetrySnapshot], None]] = []
        self.merge_count = 0
        self.change_count = 0

    @property
    def snapshot(self) -> TelemetrySnapshot:
        """Get the current snapshot."""
        with self._lock:
            return self._snapshot

    def add_update_callback(self, callback: Callable[[TelemetrySnapshot], None]) -> None:
        """Add callback for snapshot changes."""
        with self._lock:
            self._update_callbacks.append(callback)

    def remove_update_callback(self, callback: Callable[[TelemetrySnapshot], None]) -> None:
        """Remove snapshot change callback."""
        with self._lock:
            if callback in self._update_callbacks:
                self._update_callbacks.remove(callback)

    def apply(self, partial: PartialUpdate, now: Optional[float] = None) -> bool:
        """
        Merge a partial update into the owned snapshot.

        Returns:
            True if the snapshot changed
        """
        if partial.is_empty:
            return False

        with self._lock:
            snapshot, changed = merge(
                self._snapshot,
                partial,
                now=now,
                rules=self._rules,
                odometer_floor=self._odometer_floor,
                on_reject=self._on_reject,
            )
            self.merge_count += 1
            if changed:
                self._snapshot = snapshot
                self._odometer_floor = max(self._odometer_floor, snapshot.odometer_km)
                self.change_count += 1

        if changed:
            self._notify(snapshot)
        return changed

    def mark_disconnected(self) -> None:
        """Keep the last values but flag the snapshot as disconnected."""
        with self._lock:
            if not self._snapshot.is_connected:
                return
            self._snapshot = replace(self._snapshot, is_connected=False)
            snapshot = self._snapshot
        logger.info("Telemetry marked disconnected")
        self._notify(snapshot)

    def reset_session(self) -> None:
        """Start a new session: forget the odometer floor and all values."""
        with self._lock:
            self._snapshot = TelemetrySnapshot()
            self._odometer_floor = 0.0
        logger.debug("Telemetry session reset")

    def set_versions(self, firmware: Optional[str] = None, bluetooth: Optional[str] = None) -> None:
        """Record version strings reported out of band (e.g. by the transport)."""
        with self._lock:
            changes = {}
            if firmware is not None:
                changes["firmware_version"] = firmware
            if bluetooth is not None:
                changes["bluetooth_version"] = bluetooth
            if changes:
                self._snapshot = replace(self._snapshot, **changes)

    def _on_reject(self, telemetry_field: TelemetryField, value, reason: str) -> None:
        message = f"Rejected {telemetry_field.value}={value}: {reason}"
        if self._diagnostics is not None:
            self._diagnostics.record(ErrorKind.IMPLAUSIBLE_VALUE, message, source="aggregator")
        else:
            logger.debug(message)

    def _notify(self, snapshot: TelemetrySnapshot) -> None:
        with self._lock:
            callbacks = list(self._update_callbacks)
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Update callback error: {e}")
