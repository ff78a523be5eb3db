"""Configuration loading and validation."""

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

SERVICE_UUID = "9e05d06d-68a7-4e1f-a503-ae26713ac101"
CHAR_UUID = "7cb2f1b4-7e3f-43d2-8c92-df58c9a7b1a8"


@dataclass
class BleConfig:
    name: str | None = None
    address: str | None = None
    scan_timeout: float = 10.0
    service_uuid: str = SERVICE_UUID
    char_uuid: str = CHAR_UUID


@dataclass
class TimingConfig:
    """Retry, backoff and hold durations, in seconds."""

    settle_delay: float = 0.2
    connect_attempts: int = 3
    connect_backoff: float = 0.35
    quick_disconnect_window: float = 2.0
    quick_retry_limit: int = 2
    silent_attempts: int = 2
    silent_teardown_delay: float = 0.15
    silent_backoff: float = 0.3
    hold_short: float = 0.4
    hold_long: float = 0.7
    done_hold: float = 20.0


@dataclass
class MqttConfig:
    broker: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    root_topic: str = "respooler"
    device_id: str = "respooler"


@dataclass
class Config:
    ble: BleConfig = field(default_factory=BleConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    mqtt: MqttConfig | None = None

    @classmethod
    def default(cls) -> "Config":
        """BLE-only configuration with factory timings."""
        return cls()


def _load_timing(raw: dict, errors: list[str]) -> TimingConfig:
    timing = TimingConfig()
    known = {f.name: f for f in fields(TimingConfig)}
    for key, value in raw.items():
        if key not in known:
            errors.append(f"timing.{key} is not a known setting")
            continue
        expected = int if known[key].type in (int, "int") else float
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"timing.{key} must be a number")
            continue
        if value < 0:
            errors.append(f"timing.{key} must not be negative")
            continue
        setattr(timing, key, expected(value))
    return timing


def load_config(path: Path) -> Config:
    """Load and validate configuration from YAML file."""
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    errors = []

    if not isinstance(raw, dict):
        raise ValueError("configuration validation failed: top level must be a mapping")

    ble_raw = raw.get("ble") or {}
    timing_raw = raw.get("timing") or {}
    mqtt_raw = raw.get("mqtt")

    if not isinstance(ble_raw, dict):
        errors.append("'ble' section must be a mapping")
        ble_raw = {}
    if not isinstance(timing_raw, dict):
        errors.append("'timing' section must be a mapping")
        timing_raw = {}
    if mqtt_raw is not None:
        if not isinstance(mqtt_raw, dict):
            errors.append("'mqtt' section must be a mapping")
        elif "broker" not in mqtt_raw:
            errors.append("mqtt.broker is required")

    timing = _load_timing(timing_raw, errors)

    if errors:
        raise ValueError(f"configuration validation failed: {'; '.join(errors)}")

    ble = BleConfig(
        name=ble_raw.get("name"),
        address=ble_raw.get("address"),
        scan_timeout=float(ble_raw.get("scan_timeout", 10.0)),
        service_uuid=str(ble_raw.get("service_uuid", SERVICE_UUID)).lower(),
        char_uuid=str(ble_raw.get("char_uuid", CHAR_UUID)).lower(),
    )

    mqtt = None
    if mqtt_raw is not None:
        mqtt = MqttConfig(
            broker=mqtt_raw["broker"],
            port=mqtt_raw.get("port", 1883),
            username=mqtt_raw.get("username"),
            password=mqtt_raw.get("password"),
            root_topic=mqtt_raw.get("root_topic", "respooler"),
            device_id=mqtt_raw.get("device_id", "respooler"),
        )

    return Config(ble=ble, timing=timing, mqtt=mqtt)
