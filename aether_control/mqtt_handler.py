# aether_control/mqtt_handler.py
import json, time, logging
import paho.mqtt.client as mqtt

from .errors import TelemetryError
from .ingest import ingest_sample
from .registry import DeviceRegistry
from .settings import settings

log = logging.getLogger("mqtt")

def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1

def telemetry_topic(device_id: str = "+") -> str:
    return f"{settings.mqtt_topic_base}/{device_id}/telemetry"

def command_topic(device_id: str) -> str:
    return f"{settings.mqtt_topic_base}/{device_id}/command"

def handle_message(registry: DeviceRegistry, topic: str, payload: bytes) -> bool:
    """Run one MQTT telemetry message through the ingest path.

    The device id in the topic fills ``deviceId`` when the payload omits it.
    Returns True when the sample was accepted.
    """
    parts = topic.split("/")
    if len(parts) < 3 or parts[-1] != "telemetry":
        return False
    dev_id = parts[-2]
    try:
        body = json.loads(payload.decode("utf-8")) if payload else {}
    except (UnicodeDecodeError, ValueError):
        log.warning("[MQTT] %s: payload is not JSON", topic)
        return False
    if isinstance(body, dict):
        body.setdefault("deviceId", dev_id)

    try:
        ingest_sample(registry, body)
    except TelemetryError as e:
        log.warning("[MQTT] %s rejected: %s", dev_id, e.message)
        return False
    return True

def publish_power_command(client: mqtt.Client, device_id: str, is_on: bool) -> None:
    payload = json.dumps({"command": "power", "params": {"isOn": is_on}})
    info = client.publish(command_topic(device_id), payload, qos=0, retain=False)
    # paho v2: info.rc == mqtt.MQTT_ERR_SUCCESS (0) when queued
    if info.rc != mqtt.MQTT_ERR_SUCCESS:
        raise RuntimeError(f"publish rc={info.rc}")

def start_mqtt(registry: DeviceRegistry) -> mqtt.Client:
    client = mqtt.Client(
        client_id=f"aether-ingest-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,  # paho 2.x
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("[MQTT] Connect failed rc=%s (5=Not authorized). Retrying…", rc)
            return
        topic = telemetry_topic()
        res, mid = client.subscribe(topic, qos=0)
        log.info("[MQTT] Connected rc=0. SUB %s res=%s mid=%s", topic, res, mid)

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("[MQTT] Disconnected rc=%s. Reconnecting…", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        try:
            handle_message(registry, msg.topic, msg.payload)
        except Exception:
            # keep the network loop alive
            log.exception("[MQTT] on_message error on %s", msg.topic)

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "[MQTT] Bootstrapping host=%s port=%s user=%s base=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", settings.mqtt_topic_base,
    )

    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client
