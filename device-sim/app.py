
import json
import os
import random
import ssl
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt
from dotenv import load_dotenv

# -----------------------------
# Load environment (optional)
# -----------------------------
load_dotenv()

# -----------------------------
# CONFIG: fill these or use .env
# -----------------------------
MQTT_HOST = os.getenv("MQTT_BROKER_HOST", "localhost")
MQTT_PORT = int(os.getenv("MQTT_BROKER_PORT", "1883"))
MQTT_USERNAME = os.getenv("MQTT_USERNAME")
MQTT_PASSWORD = os.getenv("MQTT_PASSWORD")
USE_TLS = os.getenv("MQTT_TLS", "false").lower() in ("1", "true", "yes")
TICK_SECONDS = float(os.getenv("SIM_TICK_SECONDS", "1"))

# id, type, location, value range, publish interval (s), unit
DEVICES = [
    {"id": "temp-sensor-001", "type": "temperature", "location": "Living Room", "min": 18, "max": 30, "every": 5, "unit": "°C"},
    {"id": "temp-sensor-002", "type": "temperature", "location": "Bedroom", "min": 20, "max": 28, "every": 5, "unit": "°C"},
    {"id": "humidity-sensor-001", "type": "humidity", "location": "Kitchen", "min": 40, "max": 70, "every": 10, "unit": "%"},
    {"id": "light-sensor-001", "type": "light", "location": "Office", "min": 0, "max": 1000, "every": 3, "unit": "lux"},
    {"id": "motion-sensor-001", "type": "motion", "location": "Entrance", "min": 0, "max": 1, "every": 2, "unit": None},
]


# -----------------------------
# Helpers
# -----------------------------
def build_payload(device: dict) -> dict:
    if device["type"] == "motion":
        value = random.choice([0, 0, 0, 1])
    else:
        value = round(random.uniform(device["min"], device["max"]), 2)
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "type": device["type"],
        "location": device["location"],
        "data": {device["type"]: value},
    }
    if device["unit"]:
        payload["unit"] = device["unit"]
    return payload


def safe_publish(client: mqtt.Client, topic: str, payload: str, qos: int = 1, retries: int = 5) -> bool:
    """
    Publish with simple reconnect-aware retries.
    When the client is reconnecting, publish() will often return rc=4 (MQTT_ERR_NO_CONN).
    """
    for attempt in range(retries):
        if client.is_connected():
            r = client.publish(topic, payload=payload, qos=qos)
            if r.rc == mqtt.MQTT_ERR_SUCCESS:
                return True
        # allow time for automatic reconnect to happen
        time.sleep(1 + attempt)  # linear backoff
    print("[warn] publish failed after retries")
    return False


# -----------------------------
# MQTT callbacks (Callback API v2)
# -----------------------------
def on_connect(client: mqtt.Client, userdata, flags, reason_code, properties=None):
    print(f"[connect] reason_code={reason_code}")  # 0 means success
    if reason_code == 0:
        for device in DEVICES:
            status = {"status": "active", "connected": True, "type": device["type"], "location": device["location"]}
            client.publish(f"iot/{device['id']}/status", json.dumps(status), qos=1)
            client.subscribe(f"iot/{device['id']}/command", qos=1)
        print(f"[status] announced {len(DEVICES)} devices")
    else:
        print("[error] not connected. Check host, port and credentials.")


def on_disconnect(client: mqtt.Client, userdata, flags, reason_code, properties=None):
    print(f"[disconnect] reason_code={reason_code} (0 means clean; non-zero unexpected)")


def on_message(client: mqtt.Client, userdata, msg):
    # commands relayed by the dashboard arrive here
    try:
        body = msg.payload.decode("utf-8", errors="ignore")
    except Exception:
        body = "<binary>"
    print(f"[command] topic={msg.topic} payload={body}")


# -----------------------------
# Main
# -----------------------------
def main():
    client = mqtt.Client(
        client_id=f"device_sim_{int(time.time())}",
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    if MQTT_USERNAME:
        client.username_pw_set(username=MQTT_USERNAME, password=MQTT_PASSWORD)
    if USE_TLS:
        client.tls_set(tls_version=ssl.PROTOCOL_TLSv1_2)

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    # Optionally tune reconnect backoff
    client.reconnect_delay_set(min_delay=1, max_delay=8)

    print(f"[info] connecting to {MQTT_HOST}:{MQTT_PORT} tls={USE_TLS}")
    client.connect(MQTT_HOST, port=MQTT_PORT, keepalive=60)
    client.loop_start()

    next_due = {d["id"]: 0.0 for d in DEVICES}
    try:
        while True:
            now = time.monotonic()
            for device in DEVICES:
                if now < next_due[device["id"]]:
                    continue
                next_due[device["id"]] = now + device["every"]
                topic = f"iot/{device['id']}/data"
                payload = json.dumps(build_payload(device), separators=(",", ":"))
                ok = safe_publish(client, topic, payload, qos=1, retries=5)
                rc_txt = "ok" if ok else "fail"
                print(f"[data:{rc_txt}] topic={topic} payload={payload}")
            time.sleep(TICK_SECONDS)
    except KeyboardInterrupt:
        print("Exiting...")
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    main()
