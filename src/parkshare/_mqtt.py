"""MQTT notification dispatcher backed by a threaded paho-mqtt client."""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any, cast

import paho.mqtt.client as mqtt

from parkshare._redact import redact_for_log
from parkshare.config import MqttSettings
from parkshare.exceptions import ParkShareTransportError
from parkshare.models.notification import Notification


class MqttNotificationDispatcher:
    """Publishes notifications to ``<topic_prefix>/<user_id>``.

    ``start()`` connects and runs the paho network loop in its own thread;
    ``stop()`` disconnects.  Publishing is non-blocking.
    """

    def __init__(
        self,
        settings: MqttSettings,
        *,
        client_id: str | None = None,
        qos: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        if not settings.host:
            raise ParkShareTransportError("MQTT host is not configured")
        self._settings = settings
        self._client_id = client_id or f"parkshare-{secrets.token_hex(4)}"
        self._qos = qos
        self._logger = logger or logging.getLogger(__name__)
        self._client: mqtt.Client | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        """Whether the MQTT network loop is running."""
        return self._running

    def topic_for(self, user_id: str) -> str:
        return f"{self._settings.topic_prefix.rstrip('/')}/{user_id}"

    def start(self) -> None:
        """Connect to the broker and start the network loop."""
        self.stop()
        settings = self._settings
        self._logger.debug(
            "MQTT dispatcher start requested host=%s port=%s client_id=%s",
            settings.host,
            settings.port,
            self._client_id,
        )

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=self._client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if settings.username:
            client.username_pw_set(settings.username, settings.password)
        if settings.use_tls:
            client.tls_set()

        def on_connect(
            _c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                self._logger.warning("MQTT connect failed: %s", reason_code)
                return
            self._logger.debug("MQTT connected reason=%s", reason_code)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                self._logger.debug("MQTT disconnected: %s", reason_code)

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect

        client.connect(cast(str, settings.host), settings.port, keepalive=settings.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Disconnect and stop the network loop if running."""
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

    async def dispatch(self, notification: Notification) -> None:
        client = self._client
        if client is None or not self._running:
            raise ParkShareTransportError("MQTT dispatcher is not running")

        topic = self.topic_for(notification.user_id)
        payload = notification.to_payload()
        self._logger.debug("MQTT publish topic=%s payload=%s", topic, redact_for_log(payload))
        info = client.publish(topic, json.dumps(payload, separators=(",", ":")), qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ParkShareTransportError(
                f"MQTT publish to {topic} failed: rc={info.rc}",
                endpoint=topic,
            )
