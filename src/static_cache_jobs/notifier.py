"""Notifiers for terminal failures and progress events."""
import json
import logging
import time
from typing import Optional, Protocol

import paho.mqtt.client as mqtt

from .schemas import ErrorEvent

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify_error(self, event: ErrorEvent) -> bool: ...

    def publish_event(self, event_type: str, subject_id: str, data: dict) -> bool: ...


class MQTTNotifier:
    """MQTT publisher for error records and progress events."""

    def __init__(
        self,
        broker: str,
        port: int,
        topic: str,
        severities: tuple[str, ...] = ("error", "critical"),
    ):
        self.broker = broker
        self.port = port
        self.topic = topic
        self.severities = severities
        self.client: Optional[mqtt.Client] = None
        self.connected = False

    def connect(self) -> bool:
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.connect(self.broker, self.port, keepalive=60)
            self.client.loop_start()
            self.connected = True
            return True
        except Exception as e:
            logger.warning(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self):
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.connected = False

    def publish_event(self, event_type: str, subject_id: str, data: dict) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            payload = {
                "id": subject_id,
                "event_type": event_type,
                "timestamp": int(time.time() * 1000),
                **data,
            }
            result = self.client.publish(self.topic, json.dumps(payload), qos=1)
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error(f"Error publishing event: {e}")
            return False

    def notify_error(self, event: ErrorEvent) -> bool:
        """Publish an error record if its severity is configured for delivery."""
        if event.severity not in self.severities:
            return False
        if not self.connected or not self.client:
            return False
        try:
            result = self.client.publish(
                f"{self.topic}/errors", event.model_dump_json(), qos=1
            )
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error(f"Error publishing error event: {e}")
            return False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self.connected = not reason_code.is_failure


class NoOpNotifier:
    """No-operation notifier for testing or when notifications are disabled."""
    def connect(self) -> bool:
        return True
    def disconnect(self):
        pass
    def publish_event(self, event_type: str, subject_id: str, data: dict) -> bool:
        return True
    def notify_error(self, event: ErrorEvent) -> bool:
        return True


def get_notifier(
    notify_type: str | None = None,
    broker: str | None = None,
    port: int | None = None,
    topic: str | None = None,
) -> MQTTNotifier | NoOpNotifier:
    """Create a notifier from arguments, falling back to config values."""
    from .config import Config

    notify_type = notify_type or Config.NOTIFY_TYPE
    if notify_type == "mqtt":
        notifier = MQTTNotifier(
            broker or Config.MQTT_BROKER,
            port or Config.MQTT_PORT,
            topic or Config.MQTT_TOPIC,
            severities=tuple(Config.NOTIFY_SEVERITIES),
        )
    else:
        notifier = NoOpNotifier()
    _ = notifier.connect()
    return notifier


def report_failure(
    notifier: Optional[Notifier],
    context: str,
    message: str,
    severity: str = "error",
    **data,
) -> ErrorEvent:
    """Log a terminal failure and hand a structured record to the notifier."""
    event = ErrorEvent(
        context=context,
        message=message,
        severity=severity,
        timestamp=int(time.time() * 1000),
        data=data,
    )
    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    logger.log(level, f"[{context}] {message} {json.dumps(data, default=str)}")
    if notifier is not None:
        _ = notifier.notify_error(event)
    return event
