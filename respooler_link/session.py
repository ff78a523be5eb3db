"""Public engine surface: one session per board."""

import asyncio
import json
import logging
import math
from collections.abc import Awaitable, Callable
from typing import Any

from .ble_handler import BleTransport, Transport, TransportError
from .config import Config
from .events import Event, EventBus, Handler, SsidListEvent
from .protocol import SsidListFrame, as_number, decode, encode_command, encode_set
from .state import DeviceState, DeviceStateStore, WifiState, round_half_up
from .supervisor import ConnectionSupervisor, LinkState

logger = logging.getLogger(__name__)

POWER_MIN, POWER_MAX = 80, 120
ANGLE_MIN, ANGLE_MAX = 0, 180
SERVO_STEP_MIN, SERVO_STEP_MAX = 0.05, 20.0
SIDES = ("L", "R")
VARIANTS = ("PRO", "STD")


def _number(key: str, value: Any) -> float:
    n = as_number(value)
    if n is None or value is None or isinstance(value, bool):
        raise ValueError(f"{key} expects a number, got {value!r}")
    return n


def _side(key: str, value: Any) -> str:
    side = str(value).strip().upper()
    if side not in SIDES:
        raise ValueError(f"{key} expects 'L' or 'R', got {value!r}")
    return side


class DeviceSession:
    """Connection, protocol and state for a single respooler board.

    Consumers subscribe with on() and receive DeviceState snapshots; setters
    update the state optimistically and write one SET frame each.
    """

    def __init__(
        self,
        config: Config | None = None,
        transport: Transport | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._config = config or Config.default()
        self._bus = EventBus()
        self._store = DeviceStateStore(self._bus, self._config.timing, clock)
        self._transport = transport or BleTransport(self._config.ble)
        self._supervisor = ConnectionSupervisor(
            self._transport,
            self._store,
            self._bus,
            self._config.timing,
            clock=clock,
            sleep=sleep or asyncio.sleep,
        )
        self._transport.set_handlers(
            self._handle_notification, self._supervisor.handle_link_lost
        )

    # ------------------------------------------------------------------
    # Events and state

    def on(self, event: Event | str, handler: Handler) -> Callable[[], None]:
        return self._bus.on(event, handler)

    def off(self, event: Event | str, handler: Handler) -> None:
        self._bus.off(event, handler)

    @property
    def link_state(self) -> LinkState:
        return self._supervisor.state

    def get_state(self) -> DeviceState:
        return self._store.snapshot()

    def get_wifi(self) -> WifiState:
        return self._store.wifi_snapshot()

    def begin_edit(self, key: str) -> None:
        self._store.begin_edit(key)

    def commit_edit(self, key: str) -> None:
        self._store.commit_edit(key)

    # ------------------------------------------------------------------
    # Connection

    async def connect(self) -> bool:
        return await self._supervisor.connect()

    async def disconnect(self) -> None:
        await self._supervisor.disconnect()

    def _handle_notification(self, data: bytes) -> None:
        self._bus.log("in", data.decode("utf-8", errors="replace").strip())
        result = decode(data)

        for error in result.errors:
            logger.warning("Skipping malformed line %d: %s", error.line_no, error.reason)
            self._bus.log("err", f"line {error.line_no}: {error.reason}")

        for frame in result.frames:
            try:
                if isinstance(frame, SsidListFrame):
                    self._store.merge_ssid_list(frame)
                    self._bus.emit(Event.SSID_LIST, SsidListEvent(list(frame.ssids)))
                else:
                    self._store.merge(frame)
            except Exception as e:
                logger.exception("Failed to merge frame %r", frame)
                self._bus.log("err", str(e))

    # ------------------------------------------------------------------
    # Outbound

    async def _write(self, frame: bytes, trace: str | None = None) -> None:
        await self._transport.write(frame)
        self._bus.log("out", trace or frame.decode("utf-8").strip())

    async def _command(self, name: str) -> None:
        await self._write(encode_command(name))

    async def _set(self, key: str, wire_value: Any, local_value: Any = None) -> None:
        previous = self._store.apply_local(
            key, wire_value if local_value is None else local_value
        )
        try:
            await self._write(encode_set(key, wire_value))
        except TransportError:
            self._store.revert_local(key, previous)
            raise

    async def start(self) -> None:
        await self._command("START")

    async def stop(self) -> None:
        await self._command("STOP")

    async def pause(self) -> None:
        await self._command("PAUSE")

    async def wifi_scan(self) -> None:
        await self._command("WIFI_SCAN")

    async def wifi_connect(self) -> None:
        await self._command("WIFI_CONNECT")

    async def set_speed(self, value: Any) -> None:
        await self._set("SPD", int(_number("SPD", value)))

    async def set_high_speed(self, on: bool) -> None:
        await self._set("HS", 1 if on else 0, bool(on))

    async def set_led(self, value: Any) -> None:
        await self._set("LED", int(_number("LED", value)))

    async def set_fan_speed(self, value: Any) -> None:
        await self._set("FAN_SPD", int(_number("FAN_SPD", value)))

    async def set_fan_always(self, on: bool) -> None:
        await self._set("FAN_ALW", 1 if on else 0, bool(on))

    async def set_use_filament(self, on: bool) -> None:
        await self._set("USE_FIL", 1 if on else 0, bool(on))

    async def set_direction(self, on: bool) -> None:
        await self._set("DIR", 1 if on else 0, bool(on))

    async def set_power(self, value: Any) -> None:
        """Motor strength in percent, snapped to 80..120 in steps of 10."""
        n = round_half_up(_number("POW", value) / 10) * 10
        await self._set("POW", max(POWER_MIN, min(POWER_MAX, n)))

    async def _set_count(self, key: str, value: Any) -> None:
        n = as_number(value)
        if n is None:
            logger.debug("Ignoring non-numeric %s=%r", key, value)
            self._store.release(key)
            return
        await self._set(key, max(0, math.trunc(n)))

    async def set_torque(self, value: Any) -> None:
        await self._set_count("TRQ", value)

    async def set_jingle(self, value: Any) -> None:
        await self._set_count("JIN", value)

    async def set_target_weight(self, value: Any) -> None:
        await self._set_count("WGT", value)

    async def set_duration(self, value: Any) -> None:
        """Reference run duration at 80% speed, in seconds."""
        await self._set("DUR", int(_number("DUR", value)))

    async def set_servo_left(self, angle: Any) -> None:
        n = round_half_up(_number("SV_L", angle))
        await self._set("SV_L", max(ANGLE_MIN, min(ANGLE_MAX, n)))

    async def set_servo_right(self, angle: Any) -> None:
        n = round_half_up(_number("SV_R", angle))
        await self._set("SV_R", max(ANGLE_MIN, min(ANGLE_MAX, n)))

    async def set_servo_step(self, mm: Any) -> None:
        n = round(_number("SV_STP", mm), 2)
        await self._set("SV_STP", max(SERVO_STEP_MIN, min(SERVO_STEP_MAX, n)))

    async def set_servo_home(self, side: Any) -> None:
        await self._set("SV_HOME", _side("SV_HOME", side))

    async def servo_goto(self, side: Any) -> None:
        """Move the servo to one end; nothing to hold, the board keeps no value."""
        await self._write(encode_set("SV_GOTO", _side("SV_GOTO", side)))

    async def send_wifi_ssid(self, ssid: str) -> None:
        await self._set("WIFI_SSID", str(ssid))

    async def send_wifi_password(self, password: str) -> None:
        self._store.hold("WIFI_PASS", None)
        try:
            await self._write(
                encode_set("WIFI_PASS", str(password)),
                trace=json.dumps({"SET": {"WIFI_PASS": "***"}}),
            )
        except TransportError:
            self._store.drop_hold("WIFI_PASS")
            raise

    async def set_board_variant(self, variant: Any) -> None:
        v = str(variant).strip().upper()
        if v not in VARIANTS:
            raise ValueError(f"VAR expects one of {VARIANTS}, got {variant!r}")
        await self._set("VAR", v)
