"""Durable store on a partitioned document database (MongoDB wire protocol).

Works against MongoDB and Azure Cosmos DB for MongoDB. Every document carries
``deviceId``, which is the shard/partition key, so a device's time series,
latest state and OTA status are co-located and every per-device read is a
single-partition operation.
"""

from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

import structlog
from pydantic import ValidationError
from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..errors import BackendUnavailable, StorageConfigurationError
from ..models import DeviceLatestState, OtaStatus, TelemetryRecord, ensure_utc, to_millis
from .base import OTA_KEY_PREFIX, StorageRepo

logger = structlog.get_logger(__name__)

DEFAULT_DB = "watering_db"
DEFAULT_TIMESERIES = "device_timeseries"
DEFAULT_LATEST = "devices_latest"


def timeseries_doc_id(record: TelemetryRecord) -> str:
    return f"{record.deviceId}-{ensure_utc(record.timestamp).isoformat()}"


def ota_doc_id(device_id: str) -> str:
    return f"{OTA_KEY_PREFIX}{device_id}"


def row_to_record(row: Mapping[str, Any]) -> TelemetryRecord:
    """Map a stored row onto ``TelemetryRecord``. Raises on shape mismatch."""
    if not isinstance(row, Mapping):
        raise TypeError(f"expected a document, got {type(row).__name__}")
    record = TelemetryRecord.model_validate({k: v for k, v in row.items() if k != "_id"})
    if record.timestamp is None:
        raise ValueError("stored record has no timestamp")
    return record


class MongoRepo(StorageRepo):
    def __init__(
        self,
        uri: str,
        db_name: str = DEFAULT_DB,
        timeseries_collection: str = DEFAULT_TIMESERIES,
        latest_collection: str = DEFAULT_LATEST,
        *,
        sharded: bool = False,
        server_selection_timeout_ms: int = 5000,
        strict_reads: bool = False,
        monotonic_latest: bool = False,
        client: Optional[MongoClient] = None,
    ) -> None:
        super().__init__(strict_reads=strict_reads, monotonic_latest=monotonic_latest)
        try:
            self.client = client if client is not None else MongoClient(
                uri, tz_aware=True, serverSelectionTimeoutMS=server_selection_timeout_ms
            )
            # fail at startup rather than on the first message
            self.client.admin.command("ping")
            self.db = self.client[db_name]
            existing = set(self.db.list_collection_names())
            for name in (timeseries_collection, latest_collection):
                if name in existing:
                    continue
                self.db.create_collection(name)
                if sharded:
                    self.client.admin.command(
                        "shardCollection", f"{db_name}.{name}", key={"deviceId": "hashed"}
                    )
            self.timeseries = self.db[timeseries_collection]
            self.latest = self.db[latest_collection]
            self.timeseries.create_index([("deviceId", ASCENDING), ("timestamp", ASCENDING)])
            self.latest.create_index([("deviceId", ASCENDING)])
        except PyMongoError as ex:
            raise StorageConfigurationError(
                f"cannot initialise MongoDB store {db_name!r}: {ex}. "
                "Check the connection string and that this host is allowed by the server firewall."
            ) from ex
        logger.info(
            "mongo_store_ready",
            db=db_name,
            timeseries=timeseries_collection,
            latest=latest_collection,
            sharded=sharded,
        )

    def __repr__(self) -> str:
        return f"MongoRepo(db={self.db.name!r})"

    @contextlib.contextmanager
    def _backend(self, operation: str, device_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except PyMongoError as ex:
            raise BackendUnavailable(
                f"{operation} failed: {ex}", operation=operation, device_id=device_id
            ) from ex

    def _map(self, row: Any, operation: str) -> Optional[TelemetryRecord]:
        try:
            return row_to_record(row)
        except (ValidationError, ValueError, TypeError) as ex:
            ref = row.get("_id") if isinstance(row, Mapping) else row
            self._skip_row(operation, ref, ex)
            return None

    # --- time series

    def insert_timeseries(self, record: TelemetryRecord) -> None:
        self._check_key(record.deviceId, "insert_timeseries")
        if record.timestamp is None:
            raise ValueError("cannot store a record without a timestamp")
        doc: Dict[str, Any] = {"_id": timeseries_doc_id(record), **record.model_dump()}
        with self._backend("insert_timeseries", record.deviceId):
            try:
                self.timeseries.insert_one(doc)
            except DuplicateKeyError:
                # re-delivery of the same reading; keep both copies
                doc["_id"] = f"{doc['_id']}-{uuid.uuid4().hex[:8]}"
                self.timeseries.insert_one(doc)

    def query_timeseries(
        self, device_id: str, from_: datetime, to: datetime
    ) -> List[TelemetryRecord]:
        # bounds are compared at the stored (millisecond) precision
        from_, to = to_millis(from_), to_millis(to)
        if not self._is_key(device_id) or from_ > to:
            return []
        query = {"deviceId": device_id, "timestamp": {"$gte": from_, "$lte": to}}
        with self._backend("query_timeseries", device_id):
            rows = list(self.timeseries.find(query).sort("timestamp", ASCENDING))
        results = []
        for row in rows:
            record = self._map(row, "query_timeseries")
            if record is not None and from_ <= record.timestamp <= to:
                results.append(record)
        results.sort(key=lambda r: r.timestamp)
        return results

    # --- latest state

    def upsert_latest(self, record: TelemetryRecord) -> None:
        self._check_key(record.deviceId, "upsert_latest")
        if record.timestamp is None:
            raise ValueError("cannot store a record without a timestamp")
        doc = DeviceLatestState.from_record(record).model_dump()
        with self._backend("upsert_latest", record.deviceId):
            if not self.monotonic_latest:
                self.latest.replace_one({"_id": record.deviceId}, doc, upsert=True)
                return
            # only replace a strictly older state; a newer one makes the
            # filter miss and the upsert collide on _id
            query = {
                "_id": record.deviceId,
                "$or": [{"lastSeen": {"$lt": record.timestamp}}, {"lastSeen": {"$exists": False}}],
            }
            try:
                self.latest.replace_one(query, doc, upsert=True)
            except DuplicateKeyError:
                logger.debug(
                    "stale_latest_ignored",
                    device_id=record.deviceId,
                    incoming=record.timestamp.isoformat(),
                )

    def get_latest(self, device_id: str) -> Optional[TelemetryRecord]:
        if not self._is_key(device_id):
            return None
        with self._backend("get_latest", device_id):
            row = self.latest.find_one({"_id": device_id, "deviceId": device_id})
        if row is None or row.get("latest") is None:
            return None
        return self._map(row["latest"], "get_latest")

    def list_devices(self) -> List[TelemetryRecord]:
        with self._backend("list_devices"):
            rows = list(
                self.latest.find({"latest": {"$exists": True}}, {"latest": 1}).sort(
                    "deviceId", ASCENDING
                )
            )
        results = []
        for row in rows:
            record = self._map(row.get("latest"), "list_devices")
            if record is not None:
                results.append(record)
        results.sort(key=lambda r: r.deviceId)
        return results

    # --- OTA

    def set_ota_status(self, device_id: str, status: OtaStatus) -> None:
        self._check_key(device_id, "set_ota_status")
        doc = {"deviceId": device_id, "status": status.model_dump()}
        with self._backend("set_ota_status", device_id):
            self.latest.replace_one({"_id": ota_doc_id(device_id)}, doc, upsert=True)

    def get_ota_status(self, device_id: str) -> Optional[OtaStatus]:
        if not self._is_key(device_id):
            return None
        with self._backend("get_ota_status", device_id):
            row = self.latest.find_one({"_id": ota_doc_id(device_id), "deviceId": device_id})
        if row is None or row.get("status") is None:
            return None
        try:
            return OtaStatus.model_validate(row["status"])
        except ValidationError as ex:
            self._skip_row("get_ota_status", row.get("_id"), ex)
            return None

    def close(self) -> None:
        self.client.close()
