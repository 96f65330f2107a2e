
from datetime import datetime, timedelta, timezone
from pymongo import MongoClient, ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from typing import Any, Dict, List, Optional

READING_RETENTION_SECONDS = 30 * 24 * 3600

# never leak Mongo's ObjectId to API/WS consumers
NO_ID = {"_id": 0}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MongoRepo:
    def __init__(self, uri: str, db_name: str, client: Optional[MongoClient] = None) -> None:
        self.client = client or MongoClient(uri, tz_aware=True)
        self.db = self.client[db_name]
        self.devices = self.db["devices"]
        self.readings = self.db["readings"]

    def ensure_indexes(self) -> None:
        self.devices.create_index([("deviceId", ASCENDING)], unique=True)
        self.readings.create_index([("deviceId", ASCENDING), ("timestamp", DESCENDING)])
        # Mongo's TTL monitor removes readings once they are 30 days old
        self.readings.create_index("timestamp", expireAfterSeconds=READING_RETENTION_SECONDS)

    def ping(self) -> None:
        self.client.admin.command("ping")

    # --- presence (ingestion path)

    def upsert_presence(
        self,
        device_id: str,
        fields: Dict[str, Any],
        seen_at: datetime,
        defaults: Dict[str, Any],
    ) -> bool:
        """Atomically apply `fields` to the device, creating it from `defaults` if missing.

        lastSeen only moves forward. Returns True when the write inserted the device.
        """
        now = _utcnow()
        update = {
            "$set": {**fields, "updatedAt": now},
            "$max": {"lastSeen": seen_at},
            # $setOnInsert may not touch a path that $set already writes
            "$setOnInsert": {
                k: v for k, v in {**defaults, "createdAt": now}.items()
                if k not in fields and k not in ("deviceId", "lastSeen", "updatedAt")
            },
        }
        try:
            result = self.devices.update_one({"deviceId": device_id}, update, upsert=True)
        except DuplicateKeyError:
            # a concurrent upsert from another process inserted first; this one now matches
            result = self.devices.update_one({"deviceId": device_id}, update, upsert=True)
        return result.upserted_id is not None

    # --- registry

    def get_device(self, device_id: str) -> Optional[Dict[str, Any]]:
        return self.devices.find_one({"deviceId": device_id}, NO_ID)

    def list_devices(self) -> List[Dict[str, Any]]:
        return list(self.devices.find({}, NO_ID).sort("createdAt", DESCENDING))

    def create_device(self, doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        now = _utcnow()
        record = {"createdAt": now, "updatedAt": now, "lastSeen": now, **doc}
        try:
            self.devices.insert_one(dict(record))
        except DuplicateKeyError:
            return None
        return record

    def update_device(self, device_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self.devices.find_one_and_update(
            {"deviceId": device_id},
            {"$set": {**fields, "updatedAt": _utcnow()}},
            projection=NO_ID,
            return_document=ReturnDocument.AFTER,
        )

    def delete_device(self, device_id: str) -> Optional[Dict[str, Any]]:
        return self.devices.find_one_and_delete({"deviceId": device_id}, projection=NO_ID)

    def count_devices(self, query: Optional[Dict[str, Any]] = None) -> int:
        return self.devices.count_documents(query or {})

    def device_type_counts(self) -> List[Dict[str, Any]]:
        pipeline = [
            {"$group": {"_id": "$type", "count": {"$sum": 1}}},
            {"$project": {"_id": 0, "type": "$_id", "count": 1}},
            {"$sort": {"count": -1}},
        ]
        return list(self.devices.aggregate(pipeline))

    # --- readings

    def insert_reading(self, doc: Dict[str, Any]) -> None:
        # insert_one adds _id to the dict it is given
        self.readings.insert_one(dict(doc))

    def query_readings(
        self,
        device_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"deviceId": device_id}
        if start or end:
            query["timestamp"] = {}
            if start:
                query["timestamp"]["$gte"] = start
            if end:
                query["timestamp"]["$lte"] = end
        cur = self.readings.find(query, NO_ID).sort("timestamp", DESCENDING).limit(limit)
        return list(cur)

    def recent_readings(self, limit: int = 10) -> List[Dict[str, Any]]:
        return list(self.readings.find({}, NO_ID).sort("timestamp", DESCENDING).limit(limit))

    def reading_metrics(self, window: timedelta = timedelta(hours=1)) -> Dict[str, int]:
        pipeline = [
            {"$match": {"timestamp": {"$gte": _utcnow() - window}}},
            {"$group": {"_id": None, "totalReadings": {"$sum": 1}, "devices": {"$addToSet": "$deviceId"}}},
            {"$project": {"_id": 0, "totalReadings": 1, "activeDevicesCount": {"$size": "$devices"}}},
        ]
        rows = list(self.readings.aggregate(pipeline))
        return rows[0] if rows else {"totalReadings": 0, "activeDevicesCount": 0}

    def count_readings(self, device_id: str, start: datetime, end: Optional[datetime] = None) -> int:
        window: Dict[str, Any] = {"$gte": start}
        if end:
            window["$lt"] = end
        return self.readings.count_documents({"deviceId": device_id, "timestamp": window})

    def latest_reading(self, device_id: str) -> Optional[Dict[str, Any]]:
        return self.readings.find_one({"deviceId": device_id}, NO_ID, sort=[("timestamp", DESCENDING)])

    def hourly_series(self, since: datetime, device_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Per-hour, per-device avg/min/max of each reading's first data value.

        Values that are not numeric are left out of the aggregates but still counted.
        """
        match: Dict[str, Any] = {"timestamp": {"$gte": since}}
        if device_id:
            match["deviceId"] = device_id
        first_value = {
            "$let": {
                "vars": {"first": {"$arrayElemAt": [{"$objectToArray": {"$ifNull": ["$data", {}]}}, 0]}},
                "in": "$$first.v",
            }
        }
        pipeline = [
            {"$match": match},
            {"$set": {"value": {"$convert": {"input": first_value, "to": "double", "onError": None, "onNull": None}}}},
            {"$group": {
                "_id": {"hour": {"$dateTrunc": {"date": "$timestamp", "unit": "hour"}}, "deviceId": "$deviceId"},
                "avgValue": {"$avg": "$value"},
                "maxValue": {"$max": "$value"},
                "minValue": {"$min": "$value"},
                "count": {"$sum": 1},
            }},
            {"$project": {
                "_id": 0, "hour": "$_id.hour", "deviceId": "$_id.deviceId",
                "avgValue": 1, "maxValue": 1, "minValue": 1, "count": 1,
            }},
            {"$sort": {"hour": 1, "deviceId": 1}},
        ]
        return list(self.readings.aggregate(pipeline))
