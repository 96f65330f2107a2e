"""
Summary of Data Flow:
1) Start: main.py calls bridge.connect(loop) on startup.

2) Connect: paho connects in its own network thread and keeps reconnecting on
   its own (backoff set with reconnect_delay_set); every successful CONNACK
   re-subscribes the default topics.

3) Receive: each message arrives on the paho thread as raw bytes.

4) Decode: bytes -> UTF-8 -> JSON object. Anything else is logged and dropped.

5) Hand-off: the decoded message and its arrival time are scheduled on the
   asyncio loop (run_coroutine_threadsafe), so the paho thread never waits on
   storage or viewers. At most max_in_flight messages may be scheduled and
   unfinished at once; past that, new messages are dropped and logged.

6) Publish: commands go out with publish(); dropped when disconnected.
"""
import asyncio
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

DEFAULT_TOPICS = (
    "iot/+/data",
    "iot/+/status",
    "iot/+/command",
    "devices/+/telemetry",
)

MessageHandler = Callable[[str, Dict[str, Any], datetime], Awaitable[Any]]


def command_topic(device_id: str) -> str:
    return f"iot/{device_id}/command"


def encode_payload(payload: Any) -> Any:
    if isinstance(payload, (str, bytes, bytearray)):
        return payload
    return json.dumps(payload, separators=(",", ":"), default=str)


def decode_payload(raw: bytes) -> Dict[str, Any]:
    """Raises ValueError for anything that is not a UTF-8 JSON object."""
    data = json.loads(raw.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


class MqttBridge:
    def __init__(
        self,
        host: str,
        port: int,
        on_message: MessageHandler,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        keepalive: int = 60,
        reconnect_min_delay: int = 1,
        reconnect_max_delay: int = 30,
        topics=DEFAULT_TOPICS,
        max_in_flight: int = 1000,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self._host = host
        self._port = port
        self._on_message = on_message
        self._username = username
        self._password = password
        self._client_id = client_id or f"iot_dashboard_{int(time.time() * 1000)}"
        self._keepalive = keepalive
        self._reconnect_delay = (reconnect_min_delay, reconnect_max_delay)
        self._default_topics = tuple(topics)

        self._client = client
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected = False
        self._lock = threading.Lock()
        self._topics: Set[str] = set()
        self._pending: Dict[int, str] = {}
        self._in_flight = threading.BoundedSemaphore(max_in_flight)
        self._dropped = 0

    # --- read-only state

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def topics(self) -> Set[str]:
        with self._lock:
            return set(self._topics)

    @property
    def dropped(self) -> int:
        """Messages discarded because too many were still being processed."""
        return self._dropped

    # --- lifecycle

    def connect(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        if self._client is None:
            self._client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self._client_id,
                protocol=mqtt.MQTTv311,
                clean_session=True,
            )
        client = self._client
        if self._username:
            client.username_pw_set(self._username, self._password)

        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_subscribe = self._handle_subscribe
        client.on_message = self._handle_message

        # reconnection and its backoff are left to paho
        client.reconnect_delay_set(min_delay=self._reconnect_delay[0], max_delay=self._reconnect_delay[1])

        logger.info("[mqtt] connecting to %s:%s as %s", self._host, self._port, self._client_id)
        client.connect_async(self._host, port=self._port, keepalive=self._keepalive)
        client.loop_start()

    def disconnect(self) -> None:
        client, self._client = self._client, None
        self._connected = False
        with self._lock:
            self._topics.clear()
            self._pending.clear()
        if client is None:
            return
        try:
            client.disconnect()
            client.loop_stop()
        except Exception as ex:
            logger.warning("[mqtt] error while disconnecting: %s", ex)
        logger.info("[mqtt] disconnected")

    def subscribe(self, topic: str, qos: int = 0) -> bool:
        if not (self._connected and self._client):
            logger.warning("[mqtt] not connected, cannot subscribe to %s", topic)
            return False
        result, mid = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("[mqtt] failed to subscribe to %s: rc=%s", topic, result)
            return False
        with self._lock:
            self._pending[mid] = topic
        return True

    def publish(self, topic: str, payload: Any, qos: int = 0) -> bool:
        """At-most-once send. Nothing is queued while the link is down."""
        if not (self._connected and self._client):
            logger.warning("[mqtt] not connected, dropped publish to %s", topic)
            return False
        body = encode_payload(payload)
        info = self._client.publish(topic, body, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("[mqtt] publish to %s failed: rc=%s", topic, info.rc)
            return False
        logger.debug("[mqtt] published to %s: %s", topic, body)
        return True

    # --- paho callbacks (network thread)

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            self._connected = True
            logger.info("[mqtt] connected to %s:%s", self._host, self._port)
            for topic in self._default_topics:
                self.subscribe(topic)
        else:
            self._connected = False
            logger.error("[mqtt] connection refused: %s", reason_code)

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        with self._lock:
            self._topics.clear()
            self._pending.clear()
        if reason_code == 0:
            logger.info("[mqtt] connection closed")
        else:
            logger.warning("[mqtt] connection lost (%s), paho will reconnect", reason_code)

    def _handle_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        with self._lock:
            topic = self._pending.pop(mid, None)
        if topic is None:
            return
        failures = [rc for rc in reason_code_list if rc.is_failure]
        if failures:
            logger.error("[mqtt] broker rejected subscription to %s: %s", topic, failures[0])
            return
        with self._lock:
            self._topics.add(topic)
        logger.info("[mqtt] subscribed to %s", topic)

    def _handle_message(self, client, userdata, msg):
        received_at = datetime.now(timezone.utc)
        try:
            payload = decode_payload(msg.payload)
        except (UnicodeDecodeError, ValueError) as ex:
            logger.warning("[mqtt] dropped undecodable message on %s: %s", msg.topic, ex)
            return

        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("[mqtt] no event loop, dropped message on %s", msg.topic)
            return
        if not self._in_flight.acquire(blocking=False):
            self._dropped += 1
            logger.warning("[mqtt] too many messages in flight, dropped message on %s (%d dropped so far)",
                           msg.topic, self._dropped)
            return
        coro = self._dispatch(msg.topic, payload, received_at)
        try:
            asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError as ex:
            coro.close()
            self._in_flight.release()
            logger.warning("[mqtt] event loop unavailable (%s), dropped message on %s", ex, msg.topic)

    async def _dispatch(self, topic: str, payload: Dict[str, Any], received_at: datetime) -> None:
        try:
            await self._on_message(topic, payload, received_at)
        except Exception:
            logger.exception("[mqtt] error processing message on %s", topic)
        finally:
            self._in_flight.release()
