"""
Bluetooth Low Energy Transport

bleak-based transport: subscribes to the scooter's notify characteristic
(each notification is one frame) and writes commands to its write
characteristic. Two UART-style GATT layouts are known; the first one
present on the connected device is used unless one is forced.
"""

from dataclasses import dataclass
from typing import Optional
import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .transport_base import (
    TransportBase,
    TransportConnectionError,
    TransportError,
    TransportInfo,
    TransportState,
    TransportTimeoutError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GattProfile:
    """Service and characteristic UUIDs of one UART-style layout."""
    name: str
    service_uuid: str
    write_uuid: str
    notify_uuid: str


NORDIC_UART = GattProfile(
    name="nordic-uart",
    service_uuid="6e400001-b5a3-f393-e0a9-e50e24dcca9e",
    write_uuid="6e400002-b5a3-f393-e0a9-e50e24dcca9e",
    notify_uuid="6e400003-b5a3-f393-e0a9-e50e24dcca9e",
)

FFE0_SERIAL = GattProfile(
    name="ffe0-serial",
    service_uuid="0000ffe0-0000-1000-8000-00805f9b34fb",
    write_uuid="0000ffe1-0000-1000-8000-00805f9b34fb",
    notify_uuid="0000ffe1-0000-1000-8000-00805f9b34fb",
)

KNOWN_GATT_PROFILES = (NORDIC_UART, FFE0_SERIAL)


class BleTransport(TransportBase):
    """
    BLE transport for the scooter controller.

    Example usage:
        transport = BleTransport()
        await transport.connect("AA:BB:CC:DD:EE:FF")
        transport.set_data_callback(on_frame)
        await transport.send(FrameBuilder.get_info())
    """

    def __init__(self, gatt_profile: Optional[GattProfile] = None, connect_timeout: float = 10.0):
        """
        Initialize BLE transport.

        Args:
            gatt_profile: Force a GATT layout (default: detect)
            connect_timeout: Connection timeout in seconds
        """
        super().__init__()
        self._forced_profile = gatt_profile
        self._connect_timeout = connect_timeout
        self._client: Optional[BleakClient] = None
        self._gatt: Optional[GattProfile] = None
        self._address: Optional[str] = None

    @property
    def gatt_profile(self) -> Optional[GattProfile]:
        """GATT layout in use while connected."""
        return self._gatt

    @staticmethod
    async def discover(timeout: float = 5.0) -> list[TransportInfo]:
        """
        Scan for nearby BLE devices.

        Devices advertising a known UART service are flagged as scooters.
        """
        known_services = {p.service_uuid for p in KNOWN_GATT_PROFILES}
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
        devices = []
        for device, adv in found.values():
            advertised = {uuid.lower() for uuid in adv.service_uuids}
            devices.append(TransportInfo(
                address=device.address,
                name=device.name or adv.local_name or "",
                rssi=adv.rssi,
                is_scooter=bool(advertised & known_services),
            ))
        devices.sort(key=lambda d: (not d.is_scooter, -(d.rssi or -200)))
        return devices

    async def connect(self, address: str, **kwargs) -> None:
        """
        Connect and subscribe to notifications.

        Raises:
            TransportTimeoutError: If the device does not answer within
                the connect timeout
            TransportConnectionError: If the device cannot be reached or
                exposes no known UART service
        """
        if self._client is not None:
            await self.disconnect()

        self._set_state(TransportState.CONNECTING)
        client = BleakClient(
            address,
            disconnected_callback=self._handle_disconnect,
            timeout=kwargs.get("timeout", self._connect_timeout),
        )
        try:
            await client.connect()
            gatt = self._resolve_gatt_profile(client)
            await client.start_notify(gatt.notify_uuid, self._handle_notification)
        except asyncio.TimeoutError as e:
            await self._abort_connect(client)
            raise TransportTimeoutError(f"Timed out connecting to {address}") from e
        except (BleakError, OSError, TransportConnectionError) as e:
            await self._abort_connect(client)
            raise TransportConnectionError(f"Cannot connect to {address}: {e}") from e

        self._client = client
        self._gatt = gatt
        self._address = address
        self._set_state(TransportState.CONNECTED)
        logger.info(f"Connected to {address} ({gatt.name})")

    async def disconnect(self) -> None:
        """Stop notifications and disconnect. Safe when not connected."""
        client = self._client
        self._client = None
        if client is not None and client.is_connected:
            try:
                if self._gatt is not None:
                    await client.stop_notify(self._gatt.notify_uuid)
                await client.disconnect()
            except BleakError as e:
                logger.warning(f"Disconnect error: {e}")
        self._gatt = None
        self._address = None
        self._set_state(TransportState.DISCONNECTED)

    async def send(self, data: bytes) -> None:
        """
        Write one command frame (write without response).

        Raises:
            TransportConnectionError: If not connected
            TransportError: If the write fails
        """
        if self._client is None or self._gatt is None or not self.is_connected:
            raise TransportConnectionError("Not connected")
        try:
            await self._client.write_gatt_char(self._gatt.write_uuid, data, response=False)
        except (BleakError, OSError) as e:
            raise TransportError(f"Write failed: {e}") from e

    async def _abort_connect(self, client: BleakClient) -> None:
        self._set_state(TransportState.ERROR)
        if client.is_connected:
            try:
                await client.disconnect()
            except BleakError as e:
                logger.debug(f"Disconnect after failed connect: {e}")

    def _resolve_gatt_profile(self, client: BleakClient) -> GattProfile:
        if self._forced_profile is not None:
            return self._forced_profile
        for profile in KNOWN_GATT_PROFILES:
            if client.services.get_service(profile.service_uuid) is not None:
                return profile
        raise TransportConnectionError("No known UART service on device")

    def _handle_notification(self, _sender, data: bytearray) -> None:
        self._on_data_received(bytes(data))

    def _handle_disconnect(self, _client: BleakClient) -> None:
        if self._client is not None:
            logger.warning(f"Device {self._address} disconnected")
        self._client = None
        self._set_state(TransportState.DISCONNECTED)
