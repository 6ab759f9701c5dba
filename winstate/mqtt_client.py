from __future__ import annotations

import json
import logging
import ssl
from typing import Any

import paho.mqtt.client as mqtt

from winstate.config import MqttConfig

# (payload key, name, unit, device class)
DISCOVERY_METRICS = (
    ("cpu_usage_pct", "CPU Usage", "%", None),
    ("gpu_usage_pct", "GPU Usage", "%", None),
    ("ram_usage_pct", "RAM Usage", "%", None),
    ("disk_usage_pct", "Disk Usage", "%", None),
    ("cpu_power_watts", "CPU Power", "W", "power"),
)


class MqttPublisher:
    def __init__(self, config: MqttConfig) -> None:
        self.config = config
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
            protocol=mqtt.MQTTv311,
        )
        self.logger = logging.getLogger(self.__class__.__name__)
        self._connected = False

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect

        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls_enabled:
            self.client.tls_set(
                ca_certs=config.ca_cert,
                cert_reqs=ssl.CERT_REQUIRED,
            )

        self.client.will_set(
            self._availability_topic,
            payload="offline",
            qos=1,
            retain=True,
        )
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def _availability_topic(self) -> str:
        return f"{self.config.base_topic}/status"

    @property
    def connected(self) -> bool:
        return self._connected

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        if not reason_code.is_failure:
            self._connected = True
            self.logger.info(
                "Connected to MQTT broker %s:%s", self.config.host, self.config.port
            )
            self.client.publish(
                self._availability_topic,
                payload="online",
                qos=1,
                retain=True,
            )
        else:
            self._connected = False
            self.logger.error("Failed to connect to MQTT broker: %s", reason_code)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        self._connected = False
        if not reason_code.is_failure:
            self.logger.info("Disconnected from MQTT broker (clean)")
        else:
            self.logger.warning(
                "Unexpectedly disconnected from MQTT broker: %s. Will attempt to reconnect.",
                reason_code,
            )

    def connect(self) -> None:
        self.logger.info(
            "Connecting to MQTT broker %s:%s", self.config.host, self.config.port
        )
        self.client.connect(
            self.config.host,
            self.config.port,
            keepalive=self.config.keepalive,
        )
        # Background network loop handles reconnects.
        self.client.loop_start()

    def disconnect(self) -> None:
        if self._connected:
            self.client.publish(
                self._availability_topic,
                payload="offline",
                qos=1,
                retain=True,
            )
        self.client.loop_stop()
        self.client.disconnect()
        self.logger.info("Disconnected from MQTT broker")

    def publish(self, payload: str) -> bool:
        if not self._connected:
            self.logger.warning("Not connected to MQTT broker, message may be queued")
        self.logger.debug("Publishing metric sample to %s", self.config.base_topic)
        result = self.client.publish(
            self.config.base_topic,
            payload=payload,
            qos=self.config.qos,
            retain=self.config.retain,
        )
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.error("Failed to publish message, error code: %s", result.rc)
            return False
        return True

    def discovery_payloads(self, host_name: str) -> dict[str, dict[str, Any]]:
        """Home Assistant discovery configs keyed by topic."""
        device_id = self.config.client_id
        device = {
            "identifiers": [device_id],
            "name": host_name,
            "model": "WinState metrics engine",
        }
        payloads: dict[str, dict[str, Any]] = {}
        for key, label, unit, device_class in DISCOVERY_METRICS:
            payload: dict[str, Any] = {
                "name": label,
                "unique_id": f"{device_id}_{key}",
                "state_topic": self.config.base_topic,
                "value_template": f"{{{{ value_json.{key} }}}}",
                "unit_of_measurement": unit,
                "state_class": "measurement",
                "availability_topic": self._availability_topic,
                "payload_available": "online",
                "payload_not_available": "offline",
                "device": device,
            }
            if device_class:
                payload["device_class"] = device_class
            topic = f"{self.config.discovery_topic}/sensor/{device_id}/{key}/config"
            payloads[topic] = payload
        for direction, label in (("upload", "Network Upload"), ("download", "Network Download")):
            key = f"net_{direction}_rate"
            topic = f"{self.config.discovery_topic}/sensor/{device_id}/{key}/config"
            payloads[topic] = {
                "name": label,
                "unique_id": f"{device_id}_{key}",
                "state_topic": self.config.base_topic,
                "value_template": (
                    f"{{{{ value_json.{key} }}}} {{{{ value_json.net_{direction}_unit }}}}"
                ),
                "availability_topic": self._availability_topic,
                "payload_available": "online",
                "payload_not_available": "offline",
                "device": device,
            }
        return payloads

    def publish_discovery(self, host_name: str) -> None:
        for topic, payload in self.discovery_payloads(host_name).items():
            self.logger.debug("Publishing Home Assistant discovery to %s", topic)
            self.client.publish(
                topic,
                payload=json.dumps(payload),
                qos=self.config.qos,
                retain=True,
            )
