"""MQTT bridge exposing a device session to other consumers."""

import asyncio
import json
import logging
from dataclasses import asdict

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .events import ConnectedEvent, DisconnectedEvent, Event, SsidListEvent
from .session import DeviceSession
from .state import DeviceState

logger = logging.getLogger(__name__)

# Reconnection settings
RECONNECT_DELAY_MIN = 1  # seconds
RECONNECT_DELAY_MAX = 120  # seconds

COMMANDS = {
    "START": "start",
    "STOP": "stop",
    "PAUSE": "pause",
    "WIFI_SCAN": "wifi_scan",
    "WIFI_CONNECT": "wifi_connect",
}

SETTERS = {
    "SPD": "set_speed",
    "HS": "set_high_speed",
    "LED": "set_led",
    "FAN_SPD": "set_fan_speed",
    "FAN_ALW": "set_fan_always",
    "USE_FIL": "set_use_filament",
    "DIR": "set_direction",
    "POW": "set_power",
    "TRQ": "set_torque",
    "JIN": "set_jingle",
    "DUR": "set_duration",
    "WGT": "set_target_weight",
    "SV_L": "set_servo_left",
    "SV_R": "set_servo_right",
    "SV_STP": "set_servo_step",
    "SV_HOME": "set_servo_home",
    "SV_GOTO": "servo_goto",
    "WIFI_SSID": "send_wifi_ssid",
    "WIFI_PASS": "send_wifi_password",
    "VAR": "set_board_variant",
}


def state_payload(state: DeviceState) -> str:
    data = asdict(state)
    data.pop("temp_samples", None)
    data.pop("done_hold_until", None)
    return json.dumps(data)


def parse_value(payload: bytes):
    """Accept JSON scalars, falling back to the raw text."""
    text = payload.decode("utf-8", errors="replace").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class MqttHandler:
    """Publishes session events and routes remote commands to the session."""

    def __init__(
        self,
        config: MqttConfig,
        session: DeviceSession,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._config = config
        self._session = session
        self._loop = loop
        self._connected = False

        client_id = f"respooler-link-{config.device_id}"
        self._client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self._client.on_connect = self._handle_connect
        self._client.on_disconnect = self._handle_disconnect
        self._client.on_message = self._handle_message

        # Enable automatic reconnection with exponential backoff
        self._client.reconnect_delay_set(RECONNECT_DELAY_MIN, RECONNECT_DELAY_MAX)
        self._client.will_set(self._topic("availability"), "offline", retain=True)

        if config.username:
            self._client.username_pw_set(config.username, config.password)

        session.on(Event.STATE, self.publish_state)
        session.on(Event.CONNECTED, self.publish_connected)
        session.on(Event.DISCONNECTED, self.publish_disconnected)
        session.on(Event.SSID_LIST, self.publish_ssids)

    @property
    def connected(self) -> bool:
        """Return True if currently connected to broker."""
        return self._connected

    def _topic(self, suffix: str) -> str:
        return f"{self._config.root_topic}/{self._config.device_id}/{suffix}"

    def connect(self) -> None:
        """Connect to MQTT broker and start network loop."""
        logger.info(
            "Connecting to MQTT broker %s:%d",
            self._config.broker,
            self._config.port,
        )
        self._client.connect(self._config.broker, self._config.port)
        self._client.loop_start()

    def disconnect(self) -> None:
        """Stop network loop and disconnect from broker."""
        self._client.publish(self._topic("availability"), "offline", retain=True)
        self._client.loop_stop()
        self._client.disconnect()
        logger.info("Disconnected from MQTT broker")

    def _publish(self, suffix: str, payload: str, retain: bool = False) -> None:
        if not self._connected:
            logger.debug("Cannot publish: not connected to MQTT broker")
            return
        self._client.publish(self._topic(suffix), payload, retain=retain)

    def publish_state(self, state: DeviceState) -> None:
        self._publish("state", state_payload(state), retain=True)

    def publish_connected(self, event: ConnectedEvent) -> None:
        self._publish("availability", "online", retain=True)

    def publish_disconnected(self, event: DisconnectedEvent) -> None:
        self._publish("availability", "offline", retain=True)

    def publish_ssids(self, event: SsidListEvent) -> None:
        self._publish("ssids", json.dumps(event.ssids))

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: object,
        flags: mqtt.ConnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: mqtt.Properties | None,
    ) -> None:
        if reason_code == 0:
            self._connected = True
            logger.info("Connected to MQTT broker")
            # Resubscribe on every connect (handles reconnection)
            client.subscribe(self._topic("cmd"))
            client.subscribe(self._topic("set/+"))
            logger.info("Subscribed to %s and %s", self._topic("cmd"), self._topic("set/+"))
        else:
            self._connected = False
            logger.error("MQTT connection failed: %s", reason_code)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: object,
        disconnect_flags: mqtt.DisconnectFlags,
        reason_code: mqtt.ReasonCode,
        properties: mqtt.Properties | None,
    ) -> None:
        self._connected = False
        if reason_code == 0:
            logger.info("Disconnected from MQTT broker (clean)")
        else:
            logger.warning(
                "Disconnected from MQTT broker: %s (will reconnect)",
                reason_code,
            )

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: object,
        msg: mqtt.MQTTMessage,
    ) -> None:
        # Runs on the paho network thread; session calls go to the asyncio loop
        call = self.route(msg.topic, msg.payload)
        if call is None:
            return
        future = asyncio.run_coroutine_threadsafe(call, self._loop)
        future.add_done_callback(self._report)

    def route(self, topic: str, payload: bytes):
        """Map an inbound message to a session coroutine, or None."""
        if topic == self._topic("cmd"):
            name = payload.decode("utf-8", errors="replace").strip().upper()
            method = COMMANDS.get(name)
            if method is None:
                logger.warning("Unknown command %r on %s", name, topic)
                return None
            logger.debug("Remote command %s", name)
            return getattr(self._session, method)()

        prefix = self._topic("set/")
        if topic.startswith(prefix):
            key = topic[len(prefix):].upper()
            method = SETTERS.get(key)
            if method is None:
                logger.warning("Unknown setting %r on %s", key, topic)
                return None
            value = parse_value(payload)
            logger.debug("Remote set %s=%r", key, "***" if key == "WIFI_PASS" else value)
            return getattr(self._session, method)(value)

        return None

    def _report(self, future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Remote request failed: %s", error)
