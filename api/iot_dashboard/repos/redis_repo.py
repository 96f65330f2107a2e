
import json
import redis

LATEST_TTL_SECONDS = 24 * 3600


class RedisRepo:
    def __init__(self, url: str, client: "redis.Redis" = None) -> None:
        self.client = client or redis.Redis.from_url(url)

    @staticmethod
    def latest_key(device_id: str) -> str:
        return f"device:{device_id}:latest"

    def set_latest(self, device_id: str, doc: dict) -> None:
        self.client.set(self.latest_key(device_id), json.dumps(doc, default=str), ex=LATEST_TTL_SECONDS)

    def get_latest(self, device_id: str):
        raw = self.client.get(self.latest_key(device_id))
        return json.loads(raw) if raw else None

    def delete_latest(self, device_id: str) -> None:
        self.client.delete(self.latest_key(device_id))
