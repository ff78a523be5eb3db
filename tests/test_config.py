"""Tests for configuration loading."""

import pytest

from respooler_link.config import CHAR_UUID, SERVICE_UUID, Config, load_config


def write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestLoadConfig:
    """YAML configuration files."""

    def test_empty_file_gives_defaults(self, tmp_path):
        config = load_config(write(tmp_path, ""))

        assert config == Config.default()
        assert config.ble.service_uuid == SERVICE_UUID
        assert config.ble.char_uuid == CHAR_UUID
        assert config.mqtt is None

    def test_full_file(self, tmp_path):
        config = load_config(
            write(
                tmp_path,
                """
ble:
  name: LTS Respooler
  scan_timeout: 5
timing:
  settle_delay: 0.5
  connect_attempts: 5
  done_hold: 10
mqtt:
  broker: mqtt.local
  username: user
  password: secret
  device_id: shop
""",
            )
        )

        assert config.ble.name == "LTS Respooler"
        assert config.ble.scan_timeout == 5.0
        assert config.timing.settle_delay == 0.5
        assert config.timing.connect_attempts == 5
        assert isinstance(config.timing.connect_attempts, int)
        assert config.timing.done_hold == 10.0
        assert config.timing.hold_long == 0.7
        assert config.mqtt.broker == "mqtt.local"
        assert config.mqtt.port == 1883
        assert config.mqtt.root_topic == "respooler"
        assert config.mqtt.device_id == "shop"

    def test_uuid_override_is_lowercased(self, tmp_path):
        config = load_config(write(tmp_path, "ble:\n  service_uuid: ABCD-EF\n"))
        assert config.ble.service_uuid == "abcd-ef"

    def test_errors_are_collected(self, tmp_path):
        path = write(
            tmp_path,
            "timing:\n  settle_delay: soon\n  warp: 1\n  done_hold: -1\nmqtt:\n  port: 1\n",
        )

        with pytest.raises(ValueError) as excinfo:
            load_config(path)

        message = str(excinfo.value)
        assert "timing.settle_delay must be a number" in message
        assert "timing.warp is not a known setting" in message
        assert "timing.done_hold must not be negative" in message
        assert "mqtt.broker is required" in message

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")
