"""
Telemetry Session

High-level session that wires the pipeline together:
- Transport pushes each notification into one bounded queue
- A single consumer task runs classify -> decode -> merge in arrival order
- Keep-alive frames start the polling sequencer, the only writer
- Periodic diagnostic reports
- Teardown on disconnect keeps the last snapshot (is_connected=False)
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, Optional
import asyncio
import logging
import time

from ..communication.aggregator import DEFAULT_RULES, PlausibilityRules, TelemetryAggregator
from ..communication.calibration import DeviceProfile
from ..communication.decoder import TelemetryDecoder
from ..communication.frames import FrameKind, RawFrame, classify
from ..communication.telemetry import TelemetrySnapshot
from ..communication.transport_base import TransportBase, TransportError, TransportState
from ..diagnostics.context import DiagnosticContext, DiagnosticReport
from ..utils.error_handler import ErrorKind
from .polling_sequencer import PollingSequencer, SequencerConfig

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle state."""
    IDLE = auto()
    CONNECTING = auto()
    ACTIVE = auto()
    DISCONNECTED = auto()
    ERROR = auto()


@dataclass
class SessionConfig:
    """Session settings."""
    queue_size: int = 100
    report_interval: float = 5.0    # seconds, 0 disables periodic reports
    polling_enabled: bool = True
    sequencer: SequencerConfig = field(default_factory=SequencerConfig)
    rules: PlausibilityRules = DEFAULT_RULES


@dataclass
class SessionStats:
    """Session statistics."""
    started_at: Optional[float] = None
    last_rx_time: Optional[float] = None
    frames_received: int = 0
    frames_dropped: int = 0
    frames_decoded: int = 0
    updates_applied: int = 0

    @property
    def uptime(self) -> float:
        """Get session uptime in seconds."""
        if self.started_at:
            return time.time() - self.started_at
        return 0.0


class TelemetrySession:
    """
    Telemetry session for one scooter connection.

    Example usage:
        transport = BleTransport()
        session = TelemetrySession(transport, profile=get_profile("default"))
        session.add_update_callback(lambda s: print(f"{s.speed:.1f} km/h"))

        await session.connect("AA:BB:CC:DD:EE:FF")
        await asyncio.sleep(60)
        await session.stop()
    """

    def __init__(
        self,
        transport: TransportBase,
        profile: Optional[DeviceProfile] = None,
        config: Optional[SessionConfig] = None,
        diagnostics: Optional[DiagnosticContext] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize session.

        Args:
            transport: Transport delivering frames and accepting writes
            profile: Calibration profile for the decoder
            config: Session settings
            diagnostics: Diagnostic context (default: a new one per session)
            clock: Monotonic clock for the sequencer
        """
        self._transport = transport
        self._config = config or SessionConfig()
        self._diagnostics = diagnostics or DiagnosticContext()

        self._decoder = TelemetryDecoder(profile, self._diagnostics)
        self._aggregator = TelemetryAggregator(self._config.rules, self._diagnostics)
        self._sequencer = PollingSequencer(
            self.send_command, self._config.sequencer, clock, self._diagnostics
        )

        self._state = SessionState.IDLE
        self._state_callbacks: list[Callable[[SessionState], None]] = []
        self._queue: asyncio.Queue[RawFrame] = asyncio.Queue(maxsize=self._config.queue_size)
        self._stats = SessionStats()
        self._protocol_unknown_reported = False

        self._consumer_task: Optional[asyncio.Task] = None
        self._report_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None

        self._transport.set_data_callback(self._on_data_received)
        self._transport.set_state_callback(self._on_transport_state)

    # ========================================================================
    # Properties and callbacks
    # ========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    @property
    def snapshot(self) -> TelemetrySnapshot:
        """Get the latest telemetry snapshot."""
        return self._aggregator.snapshot

    @property
    def stats(self) -> SessionStats:
        return self._stats

    @property
    def diagnostics(self) -> DiagnosticContext:
        return self._diagnostics

    @property
    def decoder(self) -> TelemetryDecoder:
        return self._decoder

    @property
    def aggregator(self) -> TelemetryAggregator:
        return self._aggregator

    @property
    def sequencer(self) -> PollingSequencer:
        return self._sequencer

    @property
    def pending_frames(self) -> int:
        """Frames queued but not yet processed."""
        return self._queue.qsize()

    def add_update_callback(self, callback: Callable[[TelemetrySnapshot], None]) -> None:
        """Add callback fired when the snapshot actually changes."""
        self._aggregator.add_update_callback(callback)

    def remove_update_callback(self, callback: Callable[[TelemetrySnapshot], None]) -> None:
        """Remove snapshot callback."""
        self._aggregator.remove_update_callback(callback)

    def add_state_callback(self, callback: Callable[[SessionState], None]) -> None:
        """Add callback for session state changes."""
        self._state_callbacks.append(callback)

    def _set_state(self, new_state: SessionState) -> None:
        """Update state and notify callbacks."""
        if self._state != new_state:
            old_state = self._state
            self._state = new_state
            logger.info(f"Session state: {old_state.name} -> {new_state.name}")
            for callback in self._state_callbacks:
                try:
                    callback(new_state)
                except Exception as e:
                    logger.error(f"State callback error: {e}")

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def connect(self, address: str, **kwargs) -> bool:
        """
        Connect the transport and start the session.

        Returns:
            True if connection successful
        """
        if self.is_active:
            await self.stop()

        self._set_state(SessionState.CONNECTING)
        try:
            await self._transport.connect(address, **kwargs)
        except TransportError as e:
            logger.error(f"Connection failed: {e}")
            self._set_state(SessionState.ERROR)
            return False

        self.start()
        return True

    def start(self) -> None:
        """Start processing on an already connected transport."""
        if self.is_active:
            return
        self._aggregator.reset_session()
        self._sequencer.force_reinitialize()
        self._stats = SessionStats(started_at=time.time())
        self._protocol_unknown_reported = False

        self._consumer_task = asyncio.create_task(self._consume_loop())
        if self._config.polling_enabled:
            self._sequencer.start()
        if self._config.report_interval > 0:
            self._report_task = asyncio.create_task(self._report_loop())
        self._set_state(SessionState.ACTIVE)

    async def stop(self) -> None:
        """Tear down the session and disconnect the transport."""
        await self.handle_disconnect()
        await self._transport.disconnect()

    async def handle_disconnect(self) -> None:
        """
        Tear down after the link is gone.

        Stops the sequencer, discards queued frames, resets the sequencer
        and keeps the last snapshot with is_connected=False.
        """
        await self._sequencer.stop()

        for task in (self._consumer_task, self._report_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._consumer_task = None
        self._report_task = None

        discarded = self._drain_queue()
        if discarded:
            logger.debug(f"Discarded {discarded} queued frames")

        self._sequencer.force_reinitialize()
        self._aggregator.mark_disconnected()
        if self._state is not SessionState.IDLE:
            self._set_state(SessionState.DISCONNECTED)

    def _drain_queue(self) -> int:
        count = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            count += 1

    # ========================================================================
    # Outbound
    # ========================================================================

    async def send_command(self, data: bytes) -> None:
        """The single write path to the transport (used by the sequencer)."""
        await self._transport.send(data)

    # ========================================================================
    # Inbound
    # ========================================================================

    def _on_data_received(self, data: bytes) -> None:
        """Queue a frame from the transport; drops the oldest when full."""
        frame = RawFrame(data=bytes(data))
        self._stats.frames_received += 1
        self._stats.last_rx_time = frame.received_at
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._stats.frames_dropped += 1
            self._queue.put_nowait(frame)

    def _on_transport_state(self, state: TransportState) -> None:
        if state is TransportState.DISCONNECTED and self.is_active:
            logger.warning("Transport disconnected, tearing down session")
            self._teardown_task = asyncio.ensure_future(self.handle_disconnect())

    def process_frame(self, frame: RawFrame) -> bool:
        """
        Classify, decode and merge one frame synchronously.

        Returns:
            True if the snapshot changed
        """
        kind = classify(frame.data)
        self._diagnostics.record_frame(frame.data, kind, frame.received_at)

        if kind is FrameKind.KEEP_ALIVE:
            self._sequencer.observe(kind)
            return False

        update = self._decoder.decode(kind, frame.data)
        if update.is_empty:
            return False

        self._stats.frames_decoded += 1
        changed = self._aggregator.apply(update)
        if changed:
            self._stats.updates_applied += 1
        return changed

    async def _consume_loop(self) -> None:
        """Background task processing frames in arrival order."""
        while True:
            frame = await self._queue.get()
            try:
                self.process_frame(frame)
            except Exception as e:
                logger.error(f"Frame processing error: {e}")

    # ========================================================================
    # Diagnostics
    # ========================================================================

    def report(self) -> DiagnosticReport:
        """Build a diagnostic report; flags an unknown protocol once per session."""
        report = self._diagnostics.report()
        if report.protocol_unknown and not self._protocol_unknown_reported:
            self._protocol_unknown_reported = True
            self._diagnostics.record(
                ErrorKind.PROTOCOL_UNKNOWN,
                f"No valid frame among {report.total_frames} received",
                source="session",
                user_action="Capture frames and run the field scanner",
            )
        return report

    async def _report_loop(self) -> None:
        """Background task logging a diagnostic report periodically."""
        while True:
            await asyncio.sleep(self._config.report_interval)
            report = self.report()
            logger.info(f"Diagnostic report:\n{report.format()}")
