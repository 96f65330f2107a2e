
import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

from .concurrency import run_blocking
from .config import Settings, get_settings
from .logging_setup import configure_logging
from .models import CommandIn, DeviceCreate, DeviceUpdate
from .mqtt_bridge import MqttBridge, command_topic
from .pipeline import TelemetryPipeline
from .presence import PresenceTracker
from .repos.mongo_repo import MongoRepo
from .repos.redis_repo import RedisRepo
from .subscriptions import SubscriptionRegistry
from .writer import TelemetryWriter, parse_timestamp
from .ws_manager import LivePublisher, WSManager

logger = logging.getLogger(__name__)


def _command_message(command: str, payload: Any) -> Dict[str, Any]:
    return {"command": command, "payload": payload, "timestamp": datetime.now(timezone.utc).isoformat()}


def create_app(
    settings: Optional[Settings] = None,
    mongo: Optional[MongoRepo] = None,
    cache: Optional[RedisRepo] = None,
    bridge: Optional[MqttBridge] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="IoT Telemetry Ingestion & Live Dashboard")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # --- deps; the live channel exists before the bridge delivers anything
    mongo = mongo or MongoRepo(settings.mongo_uri, settings.mongo_db)
    cache = cache or RedisRepo(settings.redis_url)
    registry = SubscriptionRegistry()
    ws_manager = WSManager(registry, queue_size=settings.ws_queue_size)
    publisher = LivePublisher(ws_manager)

    presence = PresenceTracker(mongo, publisher, timeout=settings.storage_timeout)
    writer = TelemetryWriter(mongo, cache, timeout=settings.storage_timeout)
    pipeline = TelemetryPipeline(presence, writer, publisher)

    bridge = bridge or MqttBridge(
        settings.mqtt_host,
        settings.mqtt_port,
        pipeline.handle,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        keepalive=settings.mqtt_keepalive,
        reconnect_min_delay=settings.mqtt_reconnect_min_delay,
        reconnect_max_delay=settings.mqtt_reconnect_max_delay,
        max_in_flight=settings.mqtt_max_in_flight,
    )

    app.state.settings = settings
    app.state.mongo = mongo
    app.state.cache = cache
    app.state.registry = registry
    app.state.ws_manager = ws_manager
    app.state.publisher = publisher
    app.state.pipeline = pipeline
    app.state.bridge = bridge

    timeout = settings.storage_timeout

    async def storage(fn, *args):
        try:
            return await run_blocking(fn, *args, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("[api] storage call %s timed out", getattr(fn, "__name__", fn))
            raise HTTPException(status_code=504, detail="Storage timed out")
        except PyMongoError as ex:
            logger.error("[api] storage call %s failed: %s", getattr(fn, "__name__", fn), ex)
            raise HTTPException(status_code=503, detail="Storage unavailable")

    # --- startup/shutdown
    @app.on_event("startup")
    async def on_startup():
        try:
            await run_blocking(mongo.ensure_indexes, timeout=timeout)
        except Exception as ex:
            raise RuntimeError(f"Could not reach MongoDB at startup: {ex}") from ex
        bridge.connect(asyncio.get_running_loop())
        logger.info("[app] started")

    @app.on_event("shutdown")
    async def on_shutdown():
        bridge.disconnect()
        await ws_manager.close()
        logger.info("[app] stopped")

    # --- REST APIs ---
    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc),
            "mqtt": {"connected": bridge.connected, "topics": sorted(bridge.topics)},
            "viewers": ws_manager.connection_count,
        }

    @app.get("/api/devices")
    async def list_devices():
        devices = await storage(mongo.list_devices)
        for device in devices:
            try:
                device["latest"] = await run_blocking(cache.get_latest, device["deviceId"], timeout=timeout)
            except Exception as ex:
                logger.debug("[api] no cached reading for %s: %s", device["deviceId"], ex)
                device["latest"] = None
        return {"success": True, "count": len(devices), "data": devices}

    @app.get("/api/devices/{device_id}")
    async def get_device(device_id: str):
        device = await storage(mongo.get_device, device_id)
        if not device:
            raise HTTPException(status_code=404, detail="Device not found")
        return {"success": True, "data": device}

    @app.post("/api/devices", status_code=201)
    async def create_device(body: DeviceCreate):
        doc = {
            **body.model_dump(mode="json"),
            "status": "active",
            "isConnected": False,
        }
        device = await storage(mongo.create_device, doc)
        if device is None:
            raise HTTPException(status_code=400, detail="Device already exists")
        publisher.device_added(device, auto_provisioned=False)
        return {"success": True, "data": device}

    @app.put("/api/devices/{device_id}")
    async def update_device(device_id: str, body: DeviceUpdate):
        fields = body.model_dump(mode="json", exclude_none=True)
        if not fields:
            raise HTTPException(status_code=400, detail="No fields to update")
        device = await storage(mongo.update_device, device_id, fields)
        if not device:
            raise HTTPException(status_code=404, detail="Device not found")
        publisher.device_updated(device)
        return {"success": True, "data": device}

    @app.delete("/api/devices/{device_id}")
    async def delete_device(device_id: str):
        device = await storage(mongo.delete_device, device_id)
        if not device:
            raise HTTPException(status_code=404, detail="Device not found")
        try:
            await run_blocking(cache.delete_latest, device_id, timeout=timeout)
        except Exception as ex:
            logger.warning("[api] could not clear cached reading for %s: %s", device_id, ex)
        publisher.device_deleted(device_id, device.get("name"))
        return {"success": True, "message": "Device removed"}

    @app.get("/api/devices/{device_id}/data")
    async def get_device_data(
        device_id: str,
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
    ):
        start = parse_timestamp(startDate, earliest=None) if startDate else None
        end = parse_timestamp(endDate, earliest=None) if endDate else None
        if (startDate and start is None) or (endDate and end is None):
            raise HTTPException(status_code=400, detail="Invalid date")
        data = await storage(mongo.query_readings, device_id, start, end, limit)
        return {"success": True, "count": len(data), "data": data}

    @app.get("/api/devices/{device_id}/stats")
    async def get_device_stats(device_id: str):
        now = datetime.now(timezone.utc)
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)
        today_count = await storage(mongo.count_readings, device_id, today)
        yesterday_count = await storage(mongo.count_readings, device_id, yesterday, today)
        latest = await storage(mongo.latest_reading, device_id)
        return {
            "success": True,
            "data": {
                "todayCount": today_count,
                "yesterdayCount": yesterday_count,
                "change": today_count - yesterday_count,
                "latestData": latest,
                "lastUpdated": latest["timestamp"] if latest else None,
            },
        }

    @app.post("/api/devices/{device_id}/command")
    def send_command(device_id: str, body: CommandIn):
        if not bridge.publish(command_topic(device_id), _command_message(body.command, body.payload)):
            raise HTTPException(status_code=503, detail="MQTT broker not connected")
        return {"success": True, "message": f"Command sent to device {device_id}"}

    @app.get("/api/dashboard/summary")
    async def dashboard_summary():
        total = await storage(mongo.count_devices)
        connected = await storage(mongo.count_devices, {"isConnected": True})
        offline = await storage(mongo.count_devices, {"isConnected": False})
        recent: List[Dict] = await storage(mongo.recent_readings, 10)
        types = await storage(mongo.device_type_counts)
        return {
            "success": True,
            "data": {
                "totalDevices": total,
                "activeDevices": connected,
                "offlineDevices": offline,
                "connectionRate": round(connected / total * 100, 2) if total else 0,
                "recentData": recent,
                "deviceTypes": types,
            },
        }

    @app.get("/api/dashboard/metrics")
    async def dashboard_metrics():
        metrics = await storage(mongo.reading_metrics)
        return {"success": True, "data": {**metrics, "timestamp": datetime.now(timezone.utc)}}

    @app.get("/api/dashboard/timeseries")
    async def dashboard_timeseries(
        deviceId: Optional[str] = None,
        hours: int = Query(24, ge=1, le=720),
    ):
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        series = await storage(mongo.hourly_series, since, deviceId or None)
        return {"success": True, "count": len(series), "data": series}

    # --- WebSockets for live UI ---
    @app.websocket("/ws")
    async def ws_live(ws: WebSocket):
        connection_id = await ws_manager.connect(ws)
        try:
            while True:
                text = await ws.receive_text()
                try:
                    message = json.loads(text)
                except ValueError:
                    logger.debug("[ws] %s sent invalid JSON, ignored", connection_id)
                    continue
                handle_control(connection_id, message)
        except WebSocketDisconnect:
            pass
        finally:
            ws_manager.disconnect(connection_id)

    def handle_control(connection_id: str, message: Any) -> None:
        if not isinstance(message, dict):
            logger.debug("[ws] ignoring non-object message from %s", connection_id)
            return
        event, data = message.get("event"), message.get("data")
        if event == "join:device" and isinstance(data, str) and data:
            registry.join(connection_id, data)
            logger.debug("[ws] %s joined device:%s", connection_id, data)
        elif event == "leave:device" and isinstance(data, str) and data:
            registry.leave(connection_id, data)
        elif event == "device:command" and isinstance(data, dict) and data.get("deviceId") and data.get("command"):
            device_id = data["deviceId"]
            sent = bridge.publish(command_topic(device_id), _command_message(data["command"], data.get("payload")))
            logger.info("[ws] command %s for %s from %s (%s)", data["command"], device_id, connection_id,
                        "sent" if sent else "dropped")
        else:
            logger.debug("[ws] unknown control %r from %s", event, connection_id)

    return app


app = create_app()
