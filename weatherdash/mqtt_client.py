import logging
import time
from typing import Optional

import paho.mqtt.client as mqtt

from .config import Settings

logger = logging.getLogger(__name__)


def start_mqtt_publisher(settings: Settings) -> Optional[mqtt.Client]:
    """
    Connect a paho-mqtt client for alert notifications and run its network
    loop in a background thread. Returns None when MQTT is disabled.
    Retries the initial connect so a broker that is still starting does not
    take the service down.
    """
    if not settings.mqtt_enabled:
        logger.info("MQTT notifications disabled.")
        return None

    client = mqtt.Client(callback_api_version=mqtt.CallbackAPIVersion.VERSION2)
    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    def on_connect(client: mqtt.Client, userdata, flags, reason_code, properties):
        if not reason_code.is_failure:
            logger.info(
                "Connected to MQTT broker %s:%s", settings.mqtt_host, settings.mqtt_port
            )
        else:
            logger.error("MQTT connection failed: %s", reason_code)

    client.on_connect = on_connect

    for attempt in range(10):
        try:
            client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=60)
            break
        except Exception as exc:
            logger.warning("MQTT connect failed (attempt %s/10): %s", attempt + 1, exc)
            time.sleep(2)
    else:
        logger.error("MQTT broker not reachable after retries; notifications go to console only")
        return None

    client.loop_start()
    return client


def stop_mqtt_publisher(client: Optional[mqtt.Client]) -> None:
    if client is None:
        return
    try:
        client.loop_stop()
    finally:
        client.disconnect()
