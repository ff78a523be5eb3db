"""Canonical device state and the inbound merge algorithm.

The board pushes status frames at its own pace while the host writes
settings optimistically. Two overlays keep the two directions from
fighting each other:

- editing: a consumer is actively manipulating a control, device values for
  that key are ignored until the edit is committed.
- hold: installed by every local write and outliving the edit, it covers the
  round trip until the board echoes the written value or the deadline passes.

A done-hold pins progress at 100% for a while after the board reports
completion so the result stays readable.
"""

import copy
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import TimingConfig
from .events import Event, EventBus
from .protocol import SsidListFrame, StatusFrame, as_bool, as_number, is_number

logger = logging.getLogger(__name__)

TEMP_WINDOW = 10

VARIANTS = ("PRO", "STD")
UNKNOWN_VARIANT = "UNK"


@dataclass(frozen=True)
class StatusInfo:
    code: str
    text: str
    run: bool = False
    error: bool = False
    done: bool = False


STATUS_TABLE = {
    "R": StatusInfo("R", "Running…", run=True),
    "P": StatusInfo("P", "Paused"),
    "U": StatusInfo("U", "Updating…"),
    "D": StatusInfo("D", "Done!", done=True),
    "A": StatusInfo("A", "Auto-Stop!", error=True),
    "C": StatusInfo("C", "Connected"),
    "I": StatusInfo("I", "Idle"),
}


@dataclass
class WifiState:
    connected: bool | None = None
    ssid: str | None = None
    scanning: bool = False
    ssids: list[str] = field(default_factory=list)
    last_result: bool | None = None
    connection_result: bool | None = None


@dataclass
class DeviceState:
    # Identity
    name: str | None = None
    firmware: str | None = None
    variant: str = UNKNOWN_VARIANT
    did_receive_variant: bool = False

    connected: bool = False

    # Operational status
    status_code: str | None = None
    status_text: str | None = None
    run: bool = False
    error: bool = False
    error_message: str | None = None
    progress: float = 0
    remaining: float | None = None
    done_hold_until: float | None = None
    has_filament: bool | None = None
    chip_temp_avg: int | None = None
    temp_samples: list[int] = field(default_factory=list)

    # Configuration
    speed: int = 80
    high_speed: bool = False
    led: int = 50
    fan_speed: int = 80
    fan_always: bool = False
    use_filament: bool = True
    direction: bool = False
    power: int = 100
    torque: int = 0
    jingle: int = 0
    duration: int = 930
    target_weight: int = 0
    servo_left: int = 175
    servo_right: int = 5
    servo_step: float = 1.75
    servo_home: str = "L"

    wifi: WifiState = field(default_factory=WifiState)


@dataclass
class PendingEdit:
    editing: bool = False
    hold_until: float | None = None
    last_written: Any = None


_SKIP = object()


def _int(value):
    return int(value) if is_number(value) else _SKIP


def _flag(value):
    return as_bool(value)


def _count(value):
    n = as_number(value)
    return _SKIP if n is None else max(0, math.trunc(n))


def _angle(value):
    if not is_number(value):
        return _SKIP
    return max(0, min(180, round_half_up(value)))


def _step(value):
    return round(float(value), 2) if is_number(value) else _SKIP


def _side(value):
    if not isinstance(value, str):
        return _SKIP
    side = value.strip().upper()
    return side if side in ("L", "R") else _SKIP


def _text(value):
    if value is None or isinstance(value, str):
        return value or None
    return _SKIP


# Inbound key -> (state attribute, parser, long hold)
FIELDS = {
    "SPD": ("speed", _int, False),
    "HS": ("high_speed", _flag, False),
    "LED": ("led", _int, False),
    "FAN_SPD": ("fan_speed", _int, False),
    "FAN_ALW": ("fan_always", _flag, False),
    "USE_FIL": ("use_filament", _flag, False),
    "DIR": ("direction", _flag, False),
    "POW": ("power", _int, False),
    "TRQ": ("torque", _count, True),
    "JIN": ("jingle", _count, True),
    "DUR": ("duration", _int, False),
    "WGT": ("target_weight", _count, True),
    "SV_L": ("servo_left", _angle, False),
    "SV_R": ("servo_right", _angle, False),
    "SV_STP": ("servo_step", _step, True),
    "SV_HOME": ("servo_home", _side, False),
    "WIFI_OK": ("wifi.connected", _flag, False),
    "WIFI_SSID": ("wifi.ssid", _text, True),
}

# Keys without a state field that still take a hold when written
LONG_HOLD_KEYS = frozenset({"WIFI_PASS", "VAR"})


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _lookup(state: DeviceState, attr: str) -> Any:
    target = state
    for part in attr.split("."):
        target = getattr(target, part)
    return target


def _assign(state: DeviceState, attr: str, value: Any) -> None:
    target = state
    *path, name = attr.split(".")
    for part in path:
        target = getattr(target, part)
    setattr(target, name, value)


def _optional_bool(value: Any) -> bool | None:
    return None if value is None else as_bool(value)


class DeviceStateStore:
    """Owns the canonical DeviceState and reconciles it with device pushes."""

    def __init__(
        self,
        bus: EventBus,
        timing: TimingConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._bus = bus
        self._timing = timing or TimingConfig()
        self._clock = clock or time.monotonic
        self._state = DeviceState()
        self._pending: dict[str, PendingEdit] = {}

    @property
    def state(self) -> DeviceState:
        """The live canonical instance. Consumers should use snapshot()."""
        return self._state

    def snapshot(self) -> DeviceState:
        return copy.deepcopy(self._state)

    def wifi_snapshot(self) -> WifiState:
        return copy.deepcopy(self._state.wifi)

    # ------------------------------------------------------------------
    # Edit / hold overlay

    def hold_duration(self, key: str) -> float:
        entry = FIELDS.get(key)
        if key in LONG_HOLD_KEYS or (entry is not None and entry[2]):
            return self._timing.hold_long
        return self._timing.hold_short

    def begin_edit(self, key: str) -> None:
        self._pending.setdefault(key, PendingEdit()).editing = True

    def commit_edit(self, key: str) -> None:
        """Clear the editing flag. An active hold stays in place."""
        pending = self._pending.get(key)
        if pending is None:
            return
        pending.editing = False
        self._prune(key, self._clock())

    def hold(self, key: str, value: Any) -> None:
        """Install a hold for a value just written to the board."""
        pending = self._pending.setdefault(key, PendingEdit())
        pending.hold_until = self._clock() + self.hold_duration(key)
        pending.last_written = value

    def release(self, key: str) -> None:
        """Drop both the editing flag and any hold for key."""
        self._pending.pop(key, None)

    def drop_hold(self, key: str) -> None:
        """Cancel the hold for key, keeping an edit in progress."""
        pending = self._pending.get(key)
        if pending is None:
            return
        pending.hold_until = None
        pending.last_written = None
        self._prune(key, self._clock())

    def is_editing(self, key: str) -> bool:
        pending = self._pending.get(key)
        return pending is not None and pending.editing

    def is_held(self, key: str) -> bool:
        pending = self._pending.get(key)
        return (
            pending is not None
            and pending.hold_until is not None
            and self._clock() < pending.hold_until
        )

    def _prune(self, key: str, now: float) -> None:
        pending = self._pending.get(key)
        if pending is None:
            return
        if pending.hold_until is not None and now >= pending.hold_until:
            pending.hold_until = None
        if not pending.editing and pending.hold_until is None:
            del self._pending[key]

    def _accept(self, key: str, value: Any, now: float) -> bool:
        pending = self._pending.get(key)
        if pending is None:
            return True
        if pending.hold_until is not None and value == pending.last_written:
            logger.debug("Echo confirmed %s=%r", key, value)
            pending.hold_until = None
        self._prune(key, now)
        return key not in self._pending

    # ------------------------------------------------------------------
    # Local writes

    def apply_local(self, key: str, value: Any) -> Any:
        """Record an optimistic local write and hold it against device pushes.

        Returns the value it replaced, for revert_local().
        """
        self.hold(key, value)
        previous = self._set_local(key, value)
        self._bus.emit(Event.STATE, self.snapshot())
        return previous

    def revert_local(self, key: str, previous: Any) -> None:
        """Undo apply_local() after the write never reached the board."""
        self.drop_hold(key)
        self._set_local(key, previous)
        logger.debug("Reverted %s to %r", key, previous)
        self._bus.emit(Event.STATE, self.snapshot())

    def _set_local(self, key: str, value: Any) -> Any:
        entry = FIELDS.get(key)
        if entry is not None:
            previous = _lookup(self._state, entry[0])
            _assign(self._state, entry[0], value)
            return previous
        if key == "VAR":
            previous, self._state.variant = self._state.variant, value
            return previous
        return None

    # ------------------------------------------------------------------
    # Connection lifecycle

    def mark_connected(self, name: str | None) -> None:
        self._state.connected = True
        self._state.name = name

    def mark_link_lost(self) -> None:
        self._state.connected = False

    def reset_connection(self) -> None:
        """Clear connection-scoped fields, keeping configuration as last known."""
        s = self._state
        s.connected = False
        s.status_code = None
        s.status_text = None
        s.run = False
        s.error = False
        s.error_message = None
        s.progress = 0
        s.remaining = None
        s.done_hold_until = None
        s.wifi.connected = None
        s.wifi.ssid = None
        s.wifi.scanning = False
        s.wifi.ssids = []
        s.wifi.last_result = None
        s.wifi.connection_result = None

    # ------------------------------------------------------------------
    # Inbound merge

    def _done_hold_active(self, now: float) -> bool:
        until = self._state.done_hold_until
        return until is not None and now < until

    def _push_temp(self, value: float) -> None:
        samples = self._state.temp_samples
        samples.append(math.trunc(value))
        del samples[:-TEMP_WINDOW]
        self._state.chip_temp_avg = round_half_up(sum(samples) / len(samples))

    def merge_ssid_list(self, frame: SsidListFrame) -> None:
        self._state.wifi.ssids = list(frame.ssids)
        self._state.wifi.scanning = False
        logger.debug("Wifi scan found %d networks", len(frame.ssids))

    def merge(self, frame: StatusFrame) -> DeviceState:
        """Merge one status frame and emit the resulting snapshot."""
        now = self._clock()
        s = self._state
        d = frame.fields

        if frame.status is not None:
            info = STATUS_TABLE.get(frame.status.strip().upper())
            if info is None:
                logger.debug("Unknown status letter %r", frame.status)
                s.status_code = None
                s.status_text = None
            else:
                s.status_code = info.code
                s.status_text = info.text
                s.run = info.run
                s.error = info.error

        if as_bool(d.get("DONE")) or s.status_code == "D":
            s.run = False
            s.progress = 100
            s.remaining = 0
            s.done_hold_until = now + self._timing.done_hold

        if self._done_hold_active(now) and (
            as_bool(d.get("RUN"))
            or as_bool(d.get("ERR"))
            or s.status_code in ("R", "A")
        ):
            s.done_hold_until = None

        if "RUN" in d and s.status_code is None:
            s.run = as_bool(d["RUN"])

        if not as_bool(d.get("ERR")):
            if self._done_hold_active(now):
                s.progress = 100
                s.remaining = 0
                s.run = False
            else:
                if is_number(d.get("PROG")):
                    s.progress = max(0, min(100, d["PROG"]))
                if is_number(d.get("REM")):
                    s.remaining = max(0, d["REM"])

        if "ERR" in d and s.status_code is None:
            s.error = as_bool(d["ERR"])
        msg = d.get("ERR_MSG")
        s.error_message = msg if isinstance(msg, str) and msg else None

        if is_number(d.get("TEMP")):
            self._push_temp(d["TEMP"])
        if "FW" in d and isinstance(d["FW"], (str, int, float)):
            s.firmware = str(d["FW"]) or s.firmware
        if "HAS_FIL" in d:
            s.has_filament = as_bool(d["HAS_FIL"])

        for key, (attr, parse, _) in FIELDS.items():
            if key not in d:
                continue
            value = parse(d[key])
            if value is _SKIP:
                logger.debug("Ignoring %s=%r", key, d[key])
                continue
            if self._accept(key, value, now):
                _assign(s, attr, value)

        if "VAR" in d:
            s.did_receive_variant = True
            raw = str(d["VAR"]).strip().upper()
            variant = raw if raw in VARIANTS else UNKNOWN_VARIANT
            if self._accept("VAR", variant, now):
                s.variant = variant

        if "WIFI_SCAN" in d:
            s.wifi.scanning = as_bool(d["WIFI_SCAN"])
        if "WIFI_RES" in d:
            s.wifi.connection_result = _optional_bool(d["WIFI_RES"])
        if "WIFI_LAST" in d:
            s.wifi.last_result = _optional_bool(d["WIFI_LAST"])

        snapshot = self.snapshot()
        self._bus.emit(Event.STATUS, snapshot)
        self._bus.emit(Event.STATE, snapshot)
        return snapshot
