import json
import logging
import time
from typing import Callable, Optional

import paho.mqtt.client as mqtt

from .config import Settings
from .schemas import Alert

logger = logging.getLogger(__name__)


def start_alert_publisher(settings: Settings, attempts: int = 10) -> Optional[mqtt.Client]:
    """
    Connect a paho-mqtt client for alert fan-out and run its network loop in a
    background thread. Returns None when no broker is configured.
    """
    if not settings.mqtt_host:
        logger.info("MQTT alert publishing disabled (no MQTT_HOST).")
        return None

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    def on_connect(client: mqtt.Client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error("MQTT connection failed: %s", reason_code)
        else:
            logger.info("Connected to MQTT broker %s:%s", settings.mqtt_host, settings.mqtt_port)

    client.on_connect = on_connect

    # Broker may still be starting; retry before giving up.
    for attempt in range(attempts):
        try:
            client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=60)
            break
        except Exception as exc:
            logger.warning("MQTT connect failed (attempt %s/%s): %s", attempt + 1, attempts, exc)
            time.sleep(2)
    else:
        raise RuntimeError("MQTT broker not reachable after retries")

    client.loop_start()
    return client


def alert_publisher(client, topic_prefix: str = "alerts") -> Callable[[Alert], None]:
    """Build an alert callback publishing JSON on ``{topic_prefix}/{city}``."""

    def publish(alert: Alert) -> None:
        try:
            client.publish(
                f"{topic_prefix}/{alert.city}",
                json.dumps(alert.model_dump(mode="json")),
            )
        except Exception as exc:  # pragma: no cover - network variability
            logger.warning("Failed to publish alert for %s: %s", alert.city, exc)

    return publish


def stop_alert_publisher(client: mqtt.Client) -> None:
    try:
        client.loop_stop()
    finally:
        client.disconnect()
