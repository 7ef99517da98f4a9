"""
Active Command Sweep

Outbound counterpart of the field scanner for bootstrapping an unknown
controller variant: sends a fixed sweep of request frames, one at a time,
and records which of them got an answer and what kind of frame came back.

Phases:
- simple:    55 AA 01 <opcode> xor
- subopcode: 55 AA 02 <opcode> <subopcode> xor
- payload:   55 AA 03 <opcode> <subopcode> <byte> xor

Frames received while a request is outstanding are attributed to it.
Keep-alives arrive on their own schedule and are never counted as an
answer.

Example usage:
    scanner = CommandScanner(transport.send)
    transport.set_data_callback(scanner.on_frame)
    report = await scanner.run(build_sweep([SweepPhase.SUBOPCODE]))
    print(report.format())
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional
import asyncio
import logging

from ..communication.frames import FrameKind, RawFrame, classify
from ..communication.protocol import build_frame, format_hex
from ..controllers.polling_sequencer import SendFunction, SequencerConfig
from ..utils.error_handler import ErrorKind

if TYPE_CHECKING:
    from .context import DiagnosticContext

logger = logging.getLogger(__name__)


class SweepPhase(Enum):
    """Sweep phases, in the order they run."""
    SIMPLE = "simple"
    SUBOPCODE = "subopcode"
    PAYLOAD = "payload"


SIMPLE_OPCODES = (
    0x20, 0x21, 0x22, 0x23, 0x24, 0x25,   # Base requests
    0x01, 0x02, 0x03, 0x04, 0x05,         # System
    0x10, 0x11, 0x12, 0x13,               # Read
    0x30, 0x31, 0x32, 0x33,               # Write
    0xA0, 0xA1, 0xA2, 0xA3,               # Extended
)
SUBOPCODE_OPCODES = (0x20, 0x21, 0x22, 0x23)
SUBOPCODES = (0x00, 0x01, 0x02, 0x03, 0x04, 0x05, 0x10, 0x20)
PAYLOAD_OPCODES = (0x22, 0x23)
PAYLOAD_SUBOPCODES = (0x01, 0x02)
PAYLOAD_VALUES = (0x00, 0x01, 0x02, 0xFF)

# Frames that never count as an answer
_IGNORED_KINDS = (FrameKind.EMPTY, FrameKind.KEEP_ALIVE)


@dataclass(frozen=True)
class SweepRequest:
    """One request of the sweep."""
    label: str
    phase: SweepPhase
    data: bytes

    @property
    def hex(self) -> str:
        return format_hex(self.data)


def build_sweep(phases: Optional[Iterable[SweepPhase]] = None) -> list[SweepRequest]:
    """
    Build the request list.

    Args:
        phases: Phases to include (default: all, in sweep order)

    Returns:
        Requests in send order
    """
    selected = set(phases) if phases is not None else set(SweepPhase)
    requests = []

    if SweepPhase.SIMPLE in selected:
        for opcode in SIMPLE_OPCODES:
            requests.append(SweepRequest(f"simple_{opcode:02X}", SweepPhase.SIMPLE, build_frame(opcode)))

    if SweepPhase.SUBOPCODE in selected:
        for opcode in SUBOPCODE_OPCODES:
            for sub in SUBOPCODES:
                requests.append(SweepRequest(
                    f"sub_{opcode:02X}_{sub:02X}", SweepPhase.SUBOPCODE, build_frame(opcode, sub)
                ))

    if SweepPhase.PAYLOAD in selected:
        for opcode in PAYLOAD_OPCODES:
            for sub in PAYLOAD_SUBOPCODES:
                for value in PAYLOAD_VALUES:
                    requests.append(SweepRequest(
                        f"data_{opcode:02X}_{sub:02X}_{value:02X}",
                        SweepPhase.PAYLOAD,
                        build_frame(opcode, sub, bytes([value])),
                    ))

    return requests


@dataclass
class SweepResult:
    """Outcome of one request."""
    request: SweepRequest
    responses: list[RawFrame] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def answered(self) -> bool:
        return bool(self.responses)

    @property
    def kinds(self) -> Counter:
        return Counter(frame.kind for frame in self.responses)


@dataclass
class SweepReport:
    """Result of a sweep run."""
    results: list[SweepResult] = field(default_factory=list)
    planned: int = 0
    cancelled: bool = False

    @property
    def answered(self) -> list[SweepResult]:
        return [r for r in self.results if r.answered]

    @property
    def failed(self) -> list[SweepResult]:
        return [r for r in self.results if r.error is not None]

    @property
    def kind_counts(self) -> Counter:
        """Classified kinds of every answer, across all requests."""
        counts: Counter = Counter()
        for result in self.results:
            counts.update(result.kinds)
        return counts

    def format(self) -> str:
        """Multi-line text rendering for the command line."""
        status = "cancelled" if self.cancelled else "complete"
        lines = [
            f"Sweep {status}: {len(self.results)}/{self.planned} requests sent, "
            f"{len(self.answered)} answered, {len(self.failed)} write failures"
        ]
        if self.kind_counts:
            kinds = ", ".join(f"{kind.value}={count}" for kind, count in self.kind_counts.most_common())
            lines.append(f"Answer kinds: {kinds}")
        for result in self.answered:
            lines.append(f"  [{result.request.label}] {result.request.hex}")
            for frame in result.responses:
                lines.append(f"    -> {frame.hex} ({frame.kind.value}, {len(frame)} bytes)")
        if self.results and not self.answered:
            lines.append("- No request was answered: the controller may be asleep or use another framing")
        return "\n".join(lines)


class CommandScanner:
    """
    Paced request sweep with response attribution.

    One request is outstanding at a time. The next request is sent after
    the response window (the polling command interval by default); stop()
    ends the sweep before the next request.
    """

    def __init__(
        self,
        send_fn: SendFunction,
        config: Optional[SequencerConfig] = None,
        response_window: Optional[float] = None,
        diagnostics: Optional["DiagnosticContext"] = None,
    ):
        """
        Initialize the scanner.

        Args:
            send_fn: Coroutine function writing one frame to the transport
            config: Pacing settings shared with the polling sequencer
            response_window: Override the wait after each request (seconds)
            diagnostics: Context receiving received frames and write failures
        """
        self._send_fn = send_fn
        self._config = config or SequencerConfig()
        self._window = self._config.command_interval if response_window is None else response_window
        self._diagnostics = diagnostics
        self._current: Optional[SweepResult] = None
        self._stopping = False
        self._wake: Optional[asyncio.Event] = None
        self.unattributed = 0

    @property
    def response_window(self) -> float:
        return self._window

    @property
    def is_running(self) -> bool:
        return self._wake is not None

    def on_frame(self, data: bytes) -> None:
        """Data callback: attribute a received frame to the outstanding request."""
        frame = RawFrame(bytes(data))
        if self._diagnostics is not None:
            self._diagnostics.record_frame(frame.data, frame.kind, frame.received_at)
        if frame.kind in _IGNORED_KINDS:
            return
        if self._current is None:
            self.unattributed += 1
            return
        self._current.responses.append(frame)
        logger.info(f"[{self._current.request.label}] answered: {frame.hex} ({frame.kind.value})")

    def stop(self) -> None:
        """Stop the sweep before the next request."""
        self._stopping = True
        if self._wake is not None:
            self._wake.set()

    async def run(self, requests: Optional[list[SweepRequest]] = None) -> SweepReport:
        """
        Send every request and wait for answers.

        Args:
            requests: Sweep to run (default: all phases)

        Returns:
            SweepReport; cancelled is set when stop() ended it early
        """
        requests = build_sweep() if requests is None else list(requests)
        report = SweepReport(planned=len(requests))
        self._stopping = False
        self._wake = asyncio.Event()
        logger.info(f"Command sweep started: {len(requests)} requests, window {self._window:.2f}s")

        try:
            for request in requests:
                if self._stopping:
                    report.cancelled = True
                    break
                result = SweepResult(request)
                report.results.append(result)
                self._current = result
                await self._send(result)
                await self._wait(self._window)
                self._current = None
        finally:
            self._current = None
            self._wake = None

        logger.info(
            f"Command sweep {'cancelled' if report.cancelled else 'finished'}: "
            f"{len(report.answered)}/{len(report.results)} answered"
        )
        return report

    async def _send(self, result: SweepResult) -> None:
        logger.debug(f"-> [{result.request.label}] {result.request.hex}")
        try:
            await self._send_fn(result.request.data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.error = str(e)
            message = f"Sweep write {result.request.label} failed: {e}"
            if self._diagnostics is not None:
                self._diagnostics.record(ErrorKind.TRANSPORT_WRITE_FAILURE, message, source="command_scanner")
            else:
                logger.warning(message)

    async def _wait(self, timeout: float) -> None:
        """Sleep for the response window or until stop()."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except asyncio.TimeoutError:
            pass
