
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from .subscriptions import SubscriptionRegistry, device_room

logger = logging.getLogger(__name__)


class _Connection:
    def __init__(self, ws: WebSocket, queue_size: int) -> None:
        self.ws = ws
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.task: Optional[asyncio.Task] = None


class WSManager:
    """Live viewer connections, each drained by its own sender task.

    emit/broadcast only enqueue, so a slow or dead viewer never holds up the
    caller. A full queue loses its oldest message.
    """

    def __init__(self, registry: SubscriptionRegistry, queue_size: int = 256) -> None:
        self.registry = registry
        self._queue_size = queue_size
        self._connections: Dict[str, _Connection] = {}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, ws: WebSocket) -> str:
        await ws.accept()
        return self.register(ws)

    def register(self, ws: WebSocket) -> str:
        connection_id = uuid.uuid4().hex
        conn = _Connection(ws, self._queue_size)
        self._connections[connection_id] = conn
        conn.task = asyncio.get_running_loop().create_task(self._sender(connection_id, conn))
        logger.info("[ws] connected %s (%d open)", connection_id, len(self._connections))
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self.registry.drop(connection_id)
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return
        if conn.task is not None and conn.task is not asyncio.current_task():
            conn.task.cancel()
        logger.info("[ws] disconnected %s (%d open)", connection_id, len(self._connections))

    def emit_to_room(self, room: str, event: str, data: Any) -> int:
        message = jsonable_encoder({"event": event, "data": data})
        delivered = 0
        for connection_id in self.registry.room_members(room):
            delivered += self._enqueue(connection_id, message)
        return delivered

    def broadcast(self, event: str, data: Any) -> int:
        message = jsonable_encoder({"event": event, "data": data})
        delivered = 0
        for connection_id in list(self._connections):
            delivered += self._enqueue(connection_id, message)
        return delivered

    async def close(self) -> None:
        for connection_id in list(self._connections):
            self.disconnect(connection_id)

    def _enqueue(self, connection_id: str, message: Dict[str, Any]) -> int:
        conn = self._connections.get(connection_id)
        if conn is None:
            return 0
        try:
            conn.queue.put_nowait(message)
        except asyncio.QueueFull:
            try:
                conn.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                conn.queue.put_nowait(message)
            except asyncio.QueueFull:
                return 0
            logger.debug("[ws] %s is slow, dropped oldest message", connection_id)
        return 1

    async def _sender(self, connection_id: str, conn: _Connection) -> None:
        while True:
            message = await conn.queue.get()
            try:
                await conn.ws.send_json(message)
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                logger.info("[ws] send to %s failed (%s), dropping connection", connection_id, ex)
                self.disconnect(connection_id)
                return


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LivePublisher:
    """Event shapes pushed to dashboard viewers."""

    def __init__(self, manager: WSManager) -> None:
        self.manager = manager

    def device_data(self, device_id: str, topic: str, payload: Dict[str, Any]) -> None:
        self.manager.emit_to_room(device_room(device_id), "device:data", {
            "deviceId": device_id,
            "topic": topic,
            "timestamp": _now(),
            "data": payload,
        })

    def dashboard_update(self, device_id: str, payload: Dict[str, Any]) -> None:
        self.manager.broadcast("dashboard:update", {
            "type": "data",
            "deviceId": device_id,
            "timestamp": _now(),
            "data": payload,
        })

    def device_added(self, device: Dict[str, Any], auto_provisioned: bool = False) -> None:
        self.manager.broadcast("device:added", {
            "type": "device_added",
            "device": device,
            "timestamp": _now(),
            "message": f"New device {device.get('name') or device.get('deviceId')} added",
            "autoProvisioned": auto_provisioned,
        })

    def device_updated(self, device: Dict[str, Any]) -> None:
        self.manager.broadcast("device:updated", {
            "type": "device_updated",
            "device": device,
            "timestamp": _now(),
        })

    def device_deleted(self, device_id: str, name: Optional[str] = None) -> None:
        self.manager.broadcast("device:deleted", {
            "type": "device_deleted",
            "deviceId": device_id,
            "timestamp": _now(),
            "message": f"Device {name or device_id} removed",
        })


class NullPublisher:
    """Stand-in until the live channel exists; every event is discarded."""

    def device_data(self, device_id, topic, payload) -> None:
        pass

    def dashboard_update(self, device_id, payload) -> None:
        pass

    def device_added(self, device, auto_provisioned=False) -> None:
        pass

    def device_updated(self, device) -> None:
        pass

    def device_deleted(self, device_id, name=None) -> None:
        pass
