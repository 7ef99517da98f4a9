"""
Session Diagnostic Context

Provides unified error recording, frame history and diagnostic reports
for one telemetry session. A context is created by the session and passed
to each component's constructor; there is no process-wide instance.
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import logging
import threading
import time

from ..communication.frames import FrameKind, classify, describe_pattern
from ..communication.protocol import format_hex, validate_frame
from ..utils.error_handler import DEFAULT_SEVERITY, ErrorInfo, ErrorKind, ErrorSeverity

logger = logging.getLogger(__name__)


@dataclass
class FrameRecord:
    """One entry of the frame history ring buffer."""
    timestamp: float
    data: bytes
    kind: FrameKind
    pattern: str
    valid: bool

    @property
    def hex(self) -> str:
        return format_hex(self.data)


@dataclass
class DiagnosticReport:
    """Summary of the frame history and recorded errors."""
    total_frames: int = 0
    valid_frames: int = 0
    pattern_stats: Dict[str, int] = field(default_factory=dict)
    error_counts: Dict[ErrorKind, int] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)
    last_frames: List[FrameRecord] = field(default_factory=list)
    protocol_unknown: bool = False

    @property
    def validity_rate(self) -> float:
        if self.total_frames == 0:
            return 0.0
        return self.valid_frames / self.total_frames

    def format(self) -> str:
        """Multi-line text rendering for logs and the command line."""
        lines = [
            f"Frames: {self.total_frames} total, {self.valid_frames} valid "
            f"({self.validity_rate:.0%})",
        ]
        if self.pattern_stats:
            patterns = ", ".join(f"{name}={count}" for name, count in sorted(self.pattern_stats.items()))
            lines.append(f"Patterns: {patterns}")
        if self.error_counts:
            errors = ", ".join(f"{kind.value}={count}" for kind, count in self.error_counts.items())
            lines.append(f"Errors: {errors}")
        for recommendation in self.recommendations:
            lines.append(f"- {recommendation}")
        return "\n".join(lines)


def is_frame_valid(data: bytes, kind: Optional[FrameKind] = None) -> bool:
    """
    Decide whether a frame counts as valid for link statistics.

    Response frames must pass their checksum; fixed frames are valid by
    signature; empty and unknown frames never are.
    """
    kind = kind or classify(data)
    if kind in (FrameKind.EMPTY, FrameKind.UNKNOWN):
        return False
    if kind is FrameKind.PROTOCOL_RESPONSE:
        return validate_frame(data)
    return True


UNKNOWN_FRAME_THRESHOLD = 5
LOW_VALIDITY_RATE = 0.5
CHECKSUM_MISMATCH_THRESHOLD = 5


class DiagnosticContext:
    """
    Per-session error recorder and frame history.

    Features:
    - Error history with per-kind counters
    - Logging by severity
    - Callbacks per error kind
    - Bounded frame ring buffer and diagnostic report
    """

    def __init__(self, max_frames: int = 100, max_history: int = 100):
        self._lock = threading.RLock()
        self._frames: deque[FrameRecord] = deque(maxlen=max_frames)
        self._history: deque[ErrorInfo] = deque(maxlen=max_history)
        self._counts: Counter = Counter()
        self._callbacks: Dict[ErrorKind, List[Callable[[ErrorInfo], None]]] = {}

    # ========================================================================
    # Errors
    # ========================================================================

    def record(
        self,
        kind: ErrorKind,
        message: str,
        severity: Optional[ErrorSeverity] = None,
        source: str = "",
        details: str = "",
        user_action: str = "",
    ) -> ErrorInfo:
        """
        Record an error.

        Args:
            kind: Error category
            message: Short description
            severity: Override the default severity for this kind
            source: Component that reported the error
            details: Extra context (frame hex, raw values)
            user_action: Suggested operator action

        Returns:
            The recorded ErrorInfo
        """
        error = ErrorInfo(
            kind=kind,
            message=message,
            severity=severity or DEFAULT_SEVERITY[kind],
            details=details,
            source=source,
            user_action=user_action,
        )

        with self._lock:
            self._history.append(error)
            self._counts[kind] += 1
            callbacks = list(self._callbacks.get(kind, []))

        self._log_error(error)

        for callback in callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

        return error

    def register_callback(self, kind: ErrorKind, callback: Callable[[ErrorInfo], None]) -> None:
        """Register a callback for a specific error kind."""
        with self._lock:
            self._callbacks.setdefault(kind, []).append(callback)

    def unregister_callback(self, kind: ErrorKind, callback: Callable[[ErrorInfo], None]) -> None:
        """Remove a previously registered callback."""
        with self._lock:
            callbacks = self._callbacks.get(kind, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def error_count(self, kind: ErrorKind) -> int:
        with self._lock:
            return self._counts[kind]

    def get_history(self, kind: Optional[ErrorKind] = None, limit: Optional[int] = None) -> List[ErrorInfo]:
        """
        Get error history with optional filtering.

        Args:
            kind: Only errors of this kind
            limit: Only the most recent N errors
        """
        with self._lock:
            history = [e for e in self._history if kind is None or e.kind is kind]
        if limit is not None:
            history = history[-limit:]
        return history

    def _log_error(self, error: ErrorInfo) -> None:
        """Log error to Python logger."""
        log_message = f"[{error.kind.value}] {error.message}"
        if error.source:
            log_message = f"{error.source}: {log_message}"
        if error.details:
            log_message += f" ({error.details})"

        if error.severity == ErrorSeverity.DEBUG:
            logger.debug(log_message)
        elif error.severity == ErrorSeverity.INFO:
            logger.info(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        elif error.severity == ErrorSeverity.ERROR:
            logger.error(log_message)
        elif error.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message)

    # ========================================================================
    # Frame history
    # ========================================================================

    def record_frame(
        self,
        data: bytes,
        kind: Optional[FrameKind] = None,
        received_at: Optional[float] = None,
    ) -> FrameRecord:
        """Add a received frame to the ring buffer."""
        data = bytes(data)
        kind = kind or classify(data)
        frame = FrameRecord(
            timestamp=time.time() if received_at is None else received_at,
            data=data,
            kind=kind,
            pattern=describe_pattern(data),
            valid=is_frame_valid(data, kind),
        )
        with self._lock:
            self._frames.append(frame)
        logger.debug(f"Frame {frame.pattern} valid={frame.valid}: {frame.hex}")
        return frame

    @property
    def frames(self) -> List[FrameRecord]:
        with self._lock:
            return list(self._frames)

    def report(self) -> DiagnosticReport:
        """
        Build a diagnostic report from the frame history.

        Returns:
            DiagnosticReport with recommendations
        """
        with self._lock:
            frames = list(self._frames)
            counts = {kind: count for kind, count in self._counts.items() if count}

        total = len(frames)
        valid = sum(1 for f in frames if f.valid)
        unknown = sum(1 for f in frames if f.kind is FrameKind.UNKNOWN)
        report = DiagnosticReport(
            total_frames=total,
            valid_frames=valid,
            pattern_stats=dict(Counter(f.pattern for f in frames)),
            error_counts=counts,
            last_frames=frames[-5:],
        )

        if total == 0:
            report.recommendations.append("No data received, check the Bluetooth link")
        elif valid == 0:
            report.protocol_unknown = True
            report.recommendations.append(
                "No valid frame received: protocol not recognized, run the field scanner"
            )
        elif report.validity_rate < LOW_VALIDITY_RATE:
            report.recommendations.append(
                f"Low valid frame rate ({report.validity_rate:.0%}): connection unstable"
            )

        if unknown > UNKNOWN_FRAME_THRESHOLD:
            report.recommendations.append(
                f"{unknown} unknown frames received: run the field scanner to map their layout"
            )

        if counts.get(ErrorKind.CHECKSUM_MISMATCH, 0) >= CHECKSUM_MISMATCH_THRESHOLD:
            report.recommendations.append(
                f"{counts[ErrorKind.CHECKSUM_MISMATCH]} checksum mismatches: link noise or a different firmware variant"
            )

        return report

    def reset(self) -> None:
        """Clear frame history, error history and counters."""
        with self._lock:
            self._frames.clear()
            self._history.clear()
            self._counts.clear()
        logger.info("Diagnostic context reset")
