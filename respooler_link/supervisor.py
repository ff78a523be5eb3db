"""Connection lifecycle: device selection, handshake retries, silent reconnect."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from .ble_handler import (
    LinkError,
    NoDeviceSelected,
    SubsystemUnavailable,
    Transport,
    TransportError,
)
from .config import TimingConfig
from .events import ConnectedEvent, DisconnectedEvent, Event, EventBus
from .state import DeviceStateStore

logger = logging.getLogger(__name__)


class LinkState(Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SILENT_RECONNECTING = "silent_reconnecting"
    DISCONNECTED = "disconnected"


BUSY_STATES = (
    LinkState.SELECTING,
    LinkState.CONNECTING,
    LinkState.CONNECTED,
    LinkState.SILENT_RECONNECTING,
)


class ConnectionSupervisor:
    """Drives the transport through selection, handshake and reconnection.

    A link that drops shortly after connecting is re-established without
    telling consumers; only a failed or out-of-window drop, or an explicit
    disconnect(), produces a disconnected event.
    """

    def __init__(
        self,
        transport: Transport,
        store: DeviceStateStore,
        bus: EventBus,
        timing: TimingConfig | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._bus = bus
        self._timing = timing or TimingConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep

        self._state = LinkState.IDLE
        self._link: Any = None
        self._connected_at: float | None = None
        self._quick_retry_count = 0
        self._reconnect_task: asyncio.Task | None = None

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def quick_retry_count(self) -> int:
        return self._quick_retry_count

    async def connect(self) -> bool:
        """Select a device and open the channel.

        Returns True once connected, False if selection was cancelled.
        Raises SubsystemUnavailable or the final LinkError.
        """
        if self._state in BUSY_STATES:
            logger.debug("connect() ignored while %s", self._state.value)
            return self._state is LinkState.CONNECTED

        resting = self._state
        self._state = LinkState.SELECTING
        try:
            link = await self._transport.acquire_link()
        except NoDeviceSelected:
            logger.info("Device selection cancelled")
            self._bus.log("err", "device selection cancelled")
            self._state = resting
            return False
        except SubsystemUnavailable:
            self._state = resting
            raise

        if self._state is not LinkState.SELECTING:
            logger.info("Selection finished after disconnect(), not connecting")
            return False

        self._link = link
        self._state = LinkState.CONNECTING
        try:
            await self._handshake(link)
        except BaseException:
            if self._state is LinkState.CONNECTING:
                self._state = resting
            raise

        if self._state is not LinkState.CONNECTING:
            await self._transport.close_channel()
            return False

        self._quick_retry_count = 0
        self._on_connected(link)
        return True

    async def _handshake(self, link: Any) -> None:
        attempts = self._timing.connect_attempts
        last_error: LinkError | None = None

        for attempt in range(1, attempts + 1):
            logger.info("Connect attempt %d/%d", attempt, attempts)
            self._bus.log("info", f"connect attempt {attempt}/{attempts}")
            try:
                await self._transport.open_channel(link, self._timing.settle_delay)
                return
            except LinkError as e:
                last_error = e
                logger.warning("Connect attempt %d failed: %s", attempt, e)
                self._bus.log("err", f"connect attempt {attempt} failed: {e}")
                await self._transport.close_channel()
                if not e.transient:
                    raise
                if attempt < attempts:
                    await self._sleep(self._timing.connect_backoff)

        raise last_error or LinkError("no connect attempts configured")

    def _on_connected(self, link: Any) -> None:
        name = self._transport.link_name(link)
        self._state = LinkState.CONNECTED
        self._connected_at = self._clock()
        self._store.mark_connected(name)
        logger.info("Connected to %s", name or "device")
        self._bus.emit(Event.CONNECTED, ConnectedEvent(name))
        self._bus.emit(Event.STATE, self._store.snapshot())

    def handle_link_lost(self) -> None:
        """Transport callback for a channel closure we did not initiate."""
        if self._state is not LinkState.CONNECTED:
            logger.debug("Link loss ignored while %s", self._state.value)
            return

        self._store.mark_link_lost()
        elapsed = self._clock() - (self._connected_at or float("-inf"))

        if (
            elapsed < self._timing.quick_disconnect_window
            and self._quick_retry_count < self._timing.quick_retry_limit
        ):
            self._quick_retry_count += 1
            self._state = LinkState.SILENT_RECONNECTING
            logger.warning(
                "Link dropped %.0f ms after connect, reconnecting silently (%d/%d)",
                elapsed * 1000,
                self._quick_retry_count,
                self._timing.quick_retry_limit,
            )
            task = asyncio.get_running_loop().create_task(self._silent_reconnect())
            task.add_done_callback(self._reconnect_finished)
            self._reconnect_task = task
            return

        logger.warning("Link lost")
        self._enter_disconnected()

    async def _silent_reconnect(self) -> bool:
        try:
            return await self._reconnect_attempts()
        except Exception:
            logger.exception("Silent reconnect aborted")
            self._bus.log("err", "silent reconnect aborted")
            if self._state is LinkState.SILENT_RECONNECTING:
                self._enter_disconnected()
            return False

    def _reconnect_finished(self, task: asyncio.Task) -> None:
        if self._reconnect_task is task:
            self._reconnect_task = None
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Reconnect task failed: %r", error)

    async def _reconnect_attempts(self) -> bool:
        attempts = self._timing.silent_attempts

        for attempt in range(1, attempts + 1):
            if self._state is not LinkState.SILENT_RECONNECTING:
                return False

            await self._transport.close_channel()
            await self._sleep(self._timing.silent_teardown_delay)
            self._bus.log("info", f"silent reconnect {attempt}/{attempts}")
            try:
                await self._transport.open_channel(self._link, self._timing.settle_delay)
            except TransportError as e:
                logger.warning("Silent reconnect %d failed: %s", attempt, e)
                self._bus.log("err", f"silent reconnect failed: {e}")
                await self._sleep(self._timing.silent_backoff)
                continue

            if self._state is not LinkState.SILENT_RECONNECTING:
                await self._transport.close_channel()
                return False
            self._on_connected(self._link)
            return True

        if self._state is LinkState.SILENT_RECONNECTING:
            logger.warning("Silent reconnect exhausted after %d attempts", attempts)
            await self._transport.close_channel()
            self._enter_disconnected()
        return False

    def _enter_disconnected(self) -> None:
        self._state = LinkState.DISCONNECTED
        self._store.reset_connection()
        logger.info("Disconnected")
        self._bus.emit(Event.DISCONNECTED, DisconnectedEvent())
        self._bus.emit(Event.STATE, self._store.snapshot())

    async def disconnect(self) -> None:
        """Tear the link down now. No reconnect is attempted."""
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()

        previous = self._state
        if previous is LinkState.SELECTING:
            self._state = LinkState.DISCONNECTED
            return

        was_active = previous in BUSY_STATES
        if was_active:
            self._state = LinkState.DISCONNECTED
        await self._transport.close_channel()
        if was_active:
            self._enter_disconnected()
