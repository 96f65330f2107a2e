
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id: Optional[str] = None
    mqtt_keepalive: int = 60
    mqtt_reconnect_min_delay: int = 1
    mqtt_reconnect_max_delay: int = 30
    mqtt_max_in_flight: int = 1000

    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "iot_dashboard"
    redis_url: str = "redis://localhost:6379/0"

    storage_timeout: float = 5.0
    ws_queue_size: int = 256
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])


def get_settings() -> Settings:
    # .env is optional; real environment variables take precedence
    load_dotenv(override=False)

    origins = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    settings = Settings(
        mqtt_host=os.getenv("MQTT_BROKER_HOST", "localhost"),
        mqtt_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_client_id=os.getenv("MQTT_CLIENT_ID") or None,
        mqtt_keepalive=int(os.getenv("MQTT_KEEPALIVE", "60")),
        mqtt_reconnect_min_delay=int(os.getenv("MQTT_RECONNECT_MIN_DELAY", "1")),
        mqtt_reconnect_max_delay=int(os.getenv("MQTT_RECONNECT_MAX_DELAY", "30")),
        mqtt_max_in_flight=int(os.getenv("MQTT_MAX_IN_FLIGHT", "1000")),
        mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
        mongo_db=os.getenv("MONGO_DB", "iot_dashboard"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        storage_timeout=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "5")),
        ws_queue_size=int(os.getenv("WS_QUEUE_SIZE", "256")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
    if not settings.mongo_uri:
        raise RuntimeError("MONGO_URI is not set in environment.")
    return settings
