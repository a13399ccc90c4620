"""Internal MQTT topic parsing and runtime for device ingestion."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from feverwatch.config import MqttSettings


class DeviceMessageKind(enum.StrEnum):
    READING = "reading"
    STATUS = "status"
    ALERT = "alert"


# Topic suffix (after ``<prefix>/device/<device_id>/``) for each message kind.
_TOPIC_SUFFIXES: dict[DeviceMessageKind, str] = {
    DeviceMessageKind.READING: "temperature/reading",
    DeviceMessageKind.STATUS: "status",
    DeviceMessageKind.ALERT: "alerts",
}


@dataclass(frozen=True)
class DeviceMessage:
    """Parsed device publish."""

    kind: DeviceMessageKind
    device_id: str
    topic: str
    payload: dict[str, Any]


def subscription_topics(prefix: str) -> list[str]:
    return [f"{prefix}/device/+/{suffix}" for suffix in _TOPIC_SUFFIXES.values()]


def parse_device_topic(topic: str, prefix: str) -> tuple[DeviceMessageKind, str] | None:
    """Return ``(kind, device_id)`` for a device topic, or ``None`` if it is not one."""
    parts = topic.split("/")
    prefix_parts = prefix.split("/")
    n = len(prefix_parts)
    if parts[:n] != prefix_parts or len(parts) < n + 3 or parts[n] != "device":
        return None
    device_id = parts[n + 1]
    if not device_id:
        return None
    suffix = "/".join(parts[n + 2 :])
    for kind, expected in _TOPIC_SUFFIXES.items():
        if suffix == expected:
            return kind, device_id
    return None


def decode_device_message(topic: str, payload: bytes, prefix: str) -> DeviceMessage | None:
    """Parse one MQTT publish into a :class:`DeviceMessage`.

    Returns ``None`` for topics outside the device namespace. Raises
    ``ValueError`` when the payload is not a JSON object.
    """
    parsed_topic = parse_device_topic(topic, prefix)
    if parsed_topic is None:
        return None
    body = json.loads(payload.decode("utf-8"))
    if not isinstance(body, dict):
        raise ValueError("device payload is not a JSON object")
    kind, device_id = parsed_topic
    return DeviceMessage(kind=kind, device_id=device_id, topic=topic, payload=body)


class DeviceMqttRuntime:
    """Threaded paho-mqtt runtime that emits parsed device messages onto an asyncio loop."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop,
        settings: MqttSettings,
        on_message: Callable[[DeviceMessage], None],
        logger: logging.Logger | None = None,
    ) -> None:
        self._loop = loop
        self._settings = settings
        self._on_message = on_message
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def handle_publish(self, topic: str, payload: bytes) -> None:
        """Parse one publish and post it to the loop. Called on the paho network thread."""
        try:
            message = decode_device_message(topic, payload, self._settings.topic_prefix)
        except (UnicodeDecodeError, ValueError):
            self._logger.warning("Discarding malformed device payload topic=%s", topic)
            return
        if message is None:
            self._logger.debug("Ignoring publish on unrelated topic=%s", topic)
            return
        self._logger.debug("Device publish kind=%s device=%s", message.kind, message.device_id)
        self._loop.call_soon_threadsafe(self._on_message, message)

    def start(self) -> None:
        """Connect to the broker and subscribe to the device topics."""
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT runtime start requested host=%s port=%s client_id=%s",
            settings.host,
            settings.port,
            settings.client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)

        topics = subscription_topics(settings.topic_prefix)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.info("Connected to MQTT broker %s:%s", settings.host, settings.port)
            for topic in topics:
                self._logger.debug("MQTT subscribing topic=%s", topic)
                c.subscribe(topic, qos=1)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            self.handle_publish(msg.topic, msg.payload)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.warning("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect

        client.connect(settings.host, settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect current MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")
