"""
Polling Sequencer

Some controller variants only answer requests, so telemetry has to be
polled. After the first keep-alive frame the sequencer cycles through
the request commands forever, one write at a time:

    UNINITIALIZED --keep-alive--> INITIALIZING --tick--> CYCLING(0..4) -> CYCLING(0) ...
    any state --force_reinitialize--> UNINITIALIZED

The state machine is driven by tick() and an injected clock so it can be
tested without real time; run() wraps it in a cancellable asyncio task.
Write failures never escape: they are logged, counted and answered with
exponential backoff of the pacing interval.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Awaitable, Callable, Optional
import asyncio
import logging
import time

from ..communication.frames import FrameKind
from ..communication.protocol import COMMAND_TABLE, POLLING_SEQUENCE, Command, CommandDescriptor
from ..utils.error_handler import ErrorKind

if TYPE_CHECKING:
    from ..diagnostics.context import DiagnosticContext

logger = logging.getLogger(__name__)


class SequencerState(Enum):
    """Polling sequencer states."""
    UNINITIALIZED = auto()   # Waiting for the first keep-alive
    INITIALIZING = auto()    # Keep-alive seen, first request pending
    CYCLING = auto()         # Emitting the request sequence


@dataclass
class SequencerConfig:
    """Pacing and backoff settings."""
    command_interval: float = 0.5     # seconds between requests
    init_delay: float = 0.1           # keep-alive -> first request
    max_interval: float = 5.0         # backoff ceiling
    backoff_multiplier: float = 2.0   # Exponential backoff factor
    failure_threshold: int = 3        # Back off after N consecutive failures
    sequence: tuple[Command, ...] = POLLING_SEQUENCE


SendFunction = Callable[[bytes], Awaitable[None]]


class PollingSequencer:
    """
    Finite-state request driver.

    Usage:
        sequencer = PollingSequencer(transport.send)
        sequencer.observe(classify(frame))   # from the inbound consumer
        sequencer.start()
        ...
        await sequencer.stop()
    """

    def __init__(
        self,
        send_fn: SendFunction,
        config: Optional[SequencerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        diagnostics: Optional["DiagnosticContext"] = None,
    ):
        """
        Initialize the sequencer.

        Args:
            send_fn: Coroutine function writing one frame to the transport
            config: Pacing and backoff settings
            clock: Monotonic time source (seconds)
            diagnostics: Context receiving write failures
        """
        self._send_fn = send_fn
        self._config = config or SequencerConfig()
        self._clock = clock
        self._diagnostics = diagnostics
        self._commands: list[CommandDescriptor] = [COMMAND_TABLE[c] for c in self._config.sequence]
        if not self._commands:
            raise ValueError("Polling sequence is empty")

        self._state = SequencerState.UNINITIALIZED
        self._step = 0
        self._cycles = 0
        self._consecutive_failures = 0
        self._interval = self._config.command_interval
        self._next_due = 0.0

        self.commands_sent = 0
        self.send_failures = 0
        self.last_sent_at: Optional[float] = None

        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._stopping = False

    # ========================================================================
    # State
    # ========================================================================

    @property
    def state(self) -> SequencerState:
        return self._state

    @property
    def step(self) -> int:
        """Index of the next command in the sequence."""
        return self._step

    @property
    def cycles(self) -> int:
        """Completed passes through the sequence."""
        return self._cycles

    @property
    def cycle_length(self) -> int:
        return len(self._commands)

    @property
    def current_interval(self) -> float:
        """Pacing delay, including any backoff."""
        return self._interval

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, new_state: SequencerState) -> None:
        if self._state != new_state:
            old_state = self._state
            self._state = new_state
            logger.info(f"Sequencer state: {old_state.name} -> {new_state.name}")

    # ========================================================================
    # State machine
    # ========================================================================

    def observe(self, kind: FrameKind) -> bool:
        """
        Feed the kind of a received frame.

        Returns:
            True if the frame started initialization
        """
        if kind is not FrameKind.KEEP_ALIVE or self._state is not SequencerState.UNINITIALIZED:
            return False
        self._set_state(SequencerState.INITIALIZING)
        self._next_due = self._clock() + self._config.init_delay
        self._wake.set()
        return True

    def tick(self) -> Optional[CommandDescriptor]:
        """
        Advance one step.

        Returns:
            The command to send now, or None while uninitialized
        """
        if self._state is SequencerState.UNINITIALIZED:
            return None
        if self._state is SequencerState.INITIALIZING:
            self._step = 0
            self._set_state(SequencerState.CYCLING)

        command = self._commands[self._step]
        self._step = (self._step + 1) % len(self._commands)
        if self._step == 0:
            self._cycles += 1
        self._next_due = self._clock() + self._interval
        return command

    def poll(self) -> Optional[CommandDescriptor]:
        """Like tick(), but only once the pacing delay has elapsed on the clock."""
        if self._state is SequencerState.UNINITIALIZED or self._clock() < self._next_due:
            return None
        return self.tick()

    def record_send_result(self, command: CommandDescriptor, success: bool, error: Optional[Exception] = None) -> None:
        """
        Account for the outcome of one write.

        A failed command is not resent immediately; it comes round again on
        the next cycle. After failure_threshold consecutive failures the
        pacing interval grows by backoff_multiplier up to max_interval, and
        it returns to command_interval on the first success.
        """
        if success:
            self.commands_sent += 1
            self.last_sent_at = self._clock()
            if self._consecutive_failures:
                logger.info(f"Write recovered after {self._consecutive_failures} failures")
            self._consecutive_failures = 0
            self._interval = self._config.command_interval
            return

        self.send_failures += 1
        self._consecutive_failures += 1
        message = f"Write of {command} failed ({self._consecutive_failures} in a row): {error}"
        if self._diagnostics is not None:
            self._diagnostics.record(ErrorKind.TRANSPORT_WRITE_FAILURE, message, source="sequencer")
        else:
            logger.warning(message)

        if self._consecutive_failures >= self._config.failure_threshold:
            self._interval = min(
                self._interval * self._config.backoff_multiplier,
                self._config.max_interval,
            )
            logger.warning(f"Polling backoff: interval {self._interval:.2f}s")

    def force_reinitialize(self) -> None:
        """Reset all counters and wait for a new keep-alive."""
        self._step = 0
        self._cycles = 0
        self._consecutive_failures = 0
        self._interval = self._config.command_interval
        self._next_due = 0.0
        self._set_state(SequencerState.UNINITIALIZED)
        self._wake.set()

    # ========================================================================
    # Async task
    # ========================================================================

    def start(self) -> None:
        """Start the polling task on the running event loop."""
        if self.is_running:
            return
        self._stopping = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self.run())
        logger.debug("Polling task started")

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        self._stopping = True
        self._wake.set()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Polling task stopped")

    async def run(self) -> None:
        """Polling loop. Runs until stop() or cancellation."""
        while not self._stopping:
            if self._state is SequencerState.UNINITIALIZED:
                await self._wait(None)
                continue

            if self._state is SequencerState.INITIALIZING:
                await self._wait(self._config.init_delay)
                if self._stopping or self._state is not SequencerState.INITIALIZING:
                    continue

            command = self.tick()
            if command is not None:
                await self.send(command)
            await self._wait(self._interval)

    async def send(self, command: CommandDescriptor) -> bool:
        """
        Write one command and record the outcome.

        Returns:
            True if the write succeeded
        """
        try:
            await self._send_fn(command.encode())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.record_send_result(command, False, e)
            return False
        logger.debug(f"Sent {command}")
        self.record_send_result(command, True)
        return True

    async def _wait(self, timeout: Optional[float]) -> None:
        """Sleep until timeout, stop() or a state change, whichever is first."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()
