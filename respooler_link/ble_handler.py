"""BLE transport for the respooler board."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.exc import BleakError

from .config import BleConfig

logger = logging.getLogger(__name__)

# Handshake failures worth another attempt: the peer dropped or stalled
TRANSIENT_PATTERN = re.compile(
    r"disconnected|not connected|timed? ?out|in progress", re.IGNORECASE
)

NotifyHandler = Callable[[bytes], None]
DisconnectHandler = Callable[[], None]
Chooser = Callable[[list[BLEDevice]], BLEDevice | None]


class Transport(ABC):
    """A single bidirectional byte channel to one device."""

    def __init__(self) -> None:
        self._on_notify: NotifyHandler | None = None
        self._on_disconnect: DisconnectHandler | None = None

    def set_handlers(
        self,
        on_notify: NotifyHandler,
        on_disconnect: DisconnectHandler,
    ) -> None:
        """Register callbacks for inbound data and unsolicited closure."""
        self._on_notify = on_notify
        self._on_disconnect = on_disconnect

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Return True while the channel is open."""

    @abstractmethod
    async def acquire_link(self) -> Any:
        """Select a device. Raises NoDeviceSelected or SubsystemUnavailable."""

    @abstractmethod
    async def open_channel(self, link: Any, settle_delay: float = 0.0) -> None:
        """Connect and subscribe. Raises LinkError."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Send one frame. Raises NotConnected or WriteError."""

    @abstractmethod
    async def close_channel(self) -> None:
        """Tear down the channel without raising the disconnect signal."""

    def link_name(self, link: Any) -> str | None:
        return getattr(link, "name", None)


def choose_first(devices: list[BLEDevice]) -> BLEDevice | None:
    """Default chooser: take the first board the scan reported."""
    return devices[0] if devices else None


class BleTransport(Transport):
    """Handles BLE communication with the respooler board."""

    def __init__(self, config: BleConfig, chooser: Chooser | None = None) -> None:
        super().__init__()
        self._config = config
        self._chooser = chooser or choose_first
        self._client: BleakClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    def _matches(self, device: BLEDevice) -> bool:
        if self._config.name is None:
            return True
        return device.name == self._config.name

    async def acquire_link(self) -> BLEDevice:
        """Scan for boards advertising the respooler service and pick one."""
        try:
            if self._config.address:
                found = await BleakScanner.find_device_by_address(
                    self._config.address, timeout=self._config.scan_timeout
                )
                candidates = [found] if found is not None else []
            else:
                discovered = await BleakScanner.discover(
                    timeout=self._config.scan_timeout,
                    service_uuids=[self._config.service_uuid],
                )
                candidates = [d for d in discovered if self._matches(d)]
        except (BleakError, OSError) as e:
            raise SubsystemUnavailable(f"Bluetooth unavailable: {e}") from e

        logger.debug("Scan found %d candidate(s)", len(candidates))
        device = self._chooser(candidates)
        if device is None:
            raise NoDeviceSelected("no device selected")

        logger.info("Selected %s (%s)", device.name, device.address)
        return device

    async def open_channel(self, link: BLEDevice, settle_delay: float = 0.0) -> None:
        """Connect, settle, verify the characteristic and start notifications."""
        if self._client is None or self._client.address != link.address:
            self._client = BleakClient(
                link, disconnected_callback=self._handle_disconnected
            )
        client = self._client

        try:
            if not client.is_connected:
                await client.connect()
            await asyncio.sleep(settle_delay)

            service = client.services.get_service(self._config.service_uuid)
            char = client.services.get_characteristic(self._config.char_uuid)
            if service is None or char is None:
                raise LinkError("respooler characteristic not found", transient=False)

            await client.start_notify(char, self._handle_notification)
        except BleakError as e:
            msg = str(e)
            raise LinkError(msg, transient=bool(TRANSIENT_PATTERN.search(msg))) from e
        except asyncio.TimeoutError as e:
            raise LinkError("handshake timed out", transient=True) from e

        logger.info("Opened channel to %s", link.address)

    async def write(self, data: bytes) -> None:
        if not self.connected:
            raise NotConnected("channel not open")

        try:
            await self._client.write_gatt_char(self._config.char_uuid, data, response=True)
        except BleakError as e:
            logger.error("BLE write error: %s", e)
            raise WriteError(str(e)) from e
        logger.debug("Sent frame: %d bytes", len(data))

    async def close_channel(self) -> None:
        """Close the channel. Safe to call repeatedly."""
        client = self._client
        if client is None:
            return
        # Detach first so the resulting disconnect callback is ignored
        self._client = None

        if client.is_connected:
            try:
                await client.stop_notify(self._config.char_uuid)
            except BleakError as e:
                logger.debug("stop_notify error ignored: %s", e)
            try:
                await client.disconnect()
            except BleakError as e:
                logger.debug("Disconnect error ignored: %s", e)
            logger.info("Closed BLE channel")

    def _handle_notification(self, sender: Any, data: bytearray) -> None:
        logger.debug("Notification: %d bytes", len(data))
        if self._on_notify is not None:
            self._on_notify(bytes(data))

    def _handle_disconnected(self, client: BleakClient) -> None:
        if client is not self._client:
            return
        logger.warning("BLE link to %s dropped", client.address)
        self._client = None
        if self._on_disconnect is not None:
            self._on_disconnect()


class TransportError(Exception):
    """Base class for link failures."""

    pass


class SubsystemUnavailable(TransportError):
    """Raised when the platform has no usable Bluetooth stack."""

    pass


class NoDeviceSelected(TransportError):
    """Raised when device selection ends without a choice."""

    pass


class LinkError(TransportError):
    """Raised when the handshake or service discovery fails."""

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class NotConnected(TransportError):
    """Raised when writing without an open channel."""

    pass


class WriteError(TransportError):
    """Raised when the stack rejects an outbound frame."""

    pass
