"""Respooler BLE line protocol framing.

Frame format:
    one UTF-8 JSON object per line, terminated by "\\n"

Outbound (host -> board):
    {"CMD": "START"}                  imperative action
    {"SET": {"SPD": 80}}              single parameter write

Inbound (board -> host), all optional and detected by key presence:
    {"STAT": "R", "PROG": 12, ...}    status letter plus fields
    {"STAT": {"PROG": 12, ...}}       fields nested under STAT
    {"PROG": 12, ...}                 bare fields object
    {"SSID_LIST": ["home", ...]}      wifi scan result

A notification may carry several lines. Each line is parsed on its own so a
single malformed line does not discard the rest of the batch.
"""

import json
import math
from dataclasses import dataclass, field
from typing import Any

COMMANDS = frozenset({"START", "STOP", "PAUSE", "WIFI_SCAN", "WIFI_CONNECT"})

SET_KEYS = frozenset(
    {
        "SPD",
        "HS",
        "LED",
        "FAN_SPD",
        "FAN_ALW",
        "USE_FIL",
        "DIR",
        "POW",
        "TRQ",
        "JIN",
        "DUR",
        "WGT",
        "WIFI_SSID",
        "WIFI_PASS",
        "SV_R",
        "SV_L",
        "SV_STP",
        "SV_HOME",
        "SV_GOTO",
        "VAR",
    }
)

LINE_TERMINATOR = b"\n"


@dataclass
class DecodeError:
    """A line of an inbound batch that could not be parsed."""

    line_no: int
    text: str
    reason: str


@dataclass
class StatusFrame:
    """Status and field updates to be merged into device state."""

    status: str | None
    fields: dict[str, Any]


@dataclass
class SsidListFrame:
    """Result of a wifi scan."""

    ssids: list[str]


@dataclass
class DecodeResult:
    frames: list[StatusFrame | SsidListFrame] = field(default_factory=list)
    errors: list[DecodeError] = field(default_factory=list)


def _encode(obj: dict) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8") + LINE_TERMINATOR


def encode_command(name: str) -> bytes:
    """Encode an imperative command frame."""
    if name not in COMMANDS:
        raise ValueError(f"unknown command: {name!r}")
    return _encode({"CMD": name})


def encode_set(key: str, value: Any) -> bytes:
    """Encode a single parameter write."""
    if key not in SET_KEYS:
        raise ValueError(f"unknown parameter: {key!r}")
    return _encode({"SET": {key: value}})


def classify(obj: dict) -> StatusFrame | SsidListFrame:
    """Route a decoded object to the frame type it represents."""
    if "SSID_LIST" in obj:
        raw = obj["SSID_LIST"]
        ssids = [s for s in raw if isinstance(s, str)] if isinstance(raw, list) else []
        return SsidListFrame(ssids=ssids)

    stat = obj.get("STAT")
    if isinstance(stat, dict):
        return StatusFrame(status=None, fields=stat)
    if isinstance(stat, str):
        return StatusFrame(status=stat, fields=obj)
    return StatusFrame(status=None, fields=obj)


def decode(data: bytes) -> DecodeResult:
    """Decode one notification into frames, collecting per-line errors."""
    result = DecodeResult()
    text = data.decode("utf-8", errors="replace").strip()

    for line_no, line in enumerate(text.split("\n"), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as e:
            result.errors.append(DecodeError(line_no, line, str(e)))
            continue
        if not isinstance(obj, dict):
            result.errors.append(
                DecodeError(line_no, line, f"expected object, got {type(obj).__name__}")
            )
            continue
        result.frames.append(classify(obj))

    return result


def is_number(value: Any) -> bool:
    """Return True for real JSON numbers (booleans excluded)."""
    if isinstance(value, bool):
        return False
    return isinstance(value, (int, float)) and math.isfinite(value)


def as_number(value: Any) -> float | None:
    """Coerce numbers and numeric strings, None if not finite."""
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            n = float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    if value is None:
        return 0.0
    return None


def as_bool(value: Any) -> bool:
    """Board booleans arrive as true/false, 0/1 or "1"/"true"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.lower() in ("1", "true")
    return False
