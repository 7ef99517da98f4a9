"""
Transport Base Interface

Transports deliver received notifications (one frame per buffer) and
write command frames. The telemetry core never touches a transport
directly except through a single send function.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional
import asyncio


class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class TransportConnectionError(TransportError):
    """Connection-related errors."""
    pass


class TransportTimeoutError(TransportError):
    """Timeout-related errors."""
    pass


class TransportState(Enum):
    """Transport connection state."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


@dataclass
class TransportInfo:
    """Information about a discoverable device."""
    address: str
    name: str = ""
    rssi: Optional[int] = None
    is_scooter: bool = False


class TransportBase(ABC):
    """
    Abstract base class for transport implementations.

    Received data is pushed to the data callback; disconnects initiated by
    the remote side are reported through the state callback.
    """

    def __init__(self):
        self._state = TransportState.DISCONNECTED
        self._state_callback: Optional[Callable[[TransportState], None]] = None
        self._data_callback: Optional[Callable[[bytes], None]] = None

    @property
    def state(self) -> TransportState:
        """Get current transport state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        return self._state == TransportState.CONNECTED

    def set_state_callback(self, callback: Optional[Callable[[TransportState], None]]) -> None:
        """
        Set callback for state changes.

        Args:
            callback: Function to call when state changes, or None to clear
        """
        self._state_callback = callback

    def set_data_callback(self, callback: Optional[Callable[[bytes], None]]) -> None:
        """
        Set callback for received data.

        Args:
            callback: Function to call with each received frame, or None to clear
        """
        self._data_callback = callback

    def _set_state(self, new_state: TransportState) -> None:
        """
        Update transport state and notify callback.

        Args:
            new_state: New transport state
        """
        if self._state != new_state:
            self._state = new_state
            if self._state_callback:
                self._state_callback(new_state)

    def _on_data_received(self, data: bytes) -> None:
        """
        Handle received data and notify callback.

        Args:
            data: Received frame bytes
        """
        if self._data_callback:
            self._data_callback(data)

    @abstractmethod
    async def connect(self, address: str, **kwargs) -> None:
        """
        Connect to the specified device.

        Args:
            address: Device address
            **kwargs: Transport-specific connection parameters

        Raises:
            TransportConnectionError: If connection fails
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """
        Disconnect from the current device.

        This method should be safe to call even if not connected.
        """
        pass

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """
        Write one command frame.

        Args:
            data: Frame bytes

        Raises:
            TransportConnectionError: If not connected
            TransportError: If the write fails
        """
        pass


class MockTransport(TransportBase):
    """
    Mock transport for testing purposes.

    Records every write, lets tests inject received frames and script
    write failures without a physical scooter.
    """

    def __init__(self):
        super().__init__()
        self._tx_log: list[bytes] = []
        self._connected_address: Optional[str] = None
        self._auto_response: Optional[Callable[[bytes], Optional[bytes]]] = None
        self._fail_next_sends = 0

    def set_auto_response(self, handler: Optional[Callable[[bytes], Optional[bytes]]]) -> None:
        """
        Set auto-response handler for testing.

        Args:
            handler: Function that receives sent data and returns a response frame, or None
        """
        self._auto_response = handler

    def fail_next_sends(self, count: int) -> None:
        """Make the next `count` writes raise TransportError."""
        self._fail_next_sends = count

    def inject_data(self, data: bytes) -> None:
        """
        Deliver a received frame as if it came from the device.

        Args:
            data: Frame bytes
        """
        self._on_data_received(bytes(data))

    def simulate_link_loss(self) -> None:
        """Drop the connection as if the device went out of range."""
        self._connected_address = None
        self._set_state(TransportState.DISCONNECTED)

    def get_tx_log(self) -> list[bytes]:
        """Get log of all transmitted data."""
        return self._tx_log.copy()

    def clear_tx_log(self) -> None:
        """Clear the transmission log."""
        self._tx_log.clear()

    async def connect(self, address: str, **kwargs) -> None:
        """Connect to mock device."""
        self._set_state(TransportState.CONNECTING)
        await asyncio.sleep(0)
        self._connected_address = address
        self._set_state(TransportState.CONNECTED)

    async def disconnect(self) -> None:
        """Disconnect from mock device."""
        self._connected_address = None
        self._set_state(TransportState.DISCONNECTED)

    async def send(self, data: bytes) -> None:
        """Send data (logs to tx_log)."""
        if not self.is_connected:
            raise TransportConnectionError("Not connected")
        if self._fail_next_sends > 0:
            self._fail_next_sends -= 1
            raise TransportError("Simulated write failure")
        self._tx_log.append(bytes(data))

        if self._auto_response:
            response = self._auto_response(data)
            if response:
                self._on_data_received(response)
