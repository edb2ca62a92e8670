from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import (
    DuplicateKeyError,
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from src.api.config import sanitize_mongo_uri
from src.api.db.base import (
    SCHEMA_VERSION,
    DedupLedger,
    DuplicateRecordError,
    RecordBackend,
    RecordQuery,
    StorageError,
    StorageTimeoutError,
)

logger = logging.getLogger(__name__)


APP_DB_NAME = "fleetmon"

_TIMEOUT_ERRORS = (ExecutionTimeout, NetworkTimeout, ServerSelectionTimeoutError, WTimeoutError)


@dataclass(frozen=True)
class MongoCollections:
    """Convenience wrapper for app collections."""

    alerts: Collection
    notifications: Collection
    alert_dedup: Collection


class MongoManager:
    """
    MongoDB connection manager.

    Maintains one MongoClient for the app's own storage DB ("fleetmon"). Every network
    operation is bounded by `timeout_ms` (server selection, connect and socket timeouts).
    """

    def __init__(self, app_mongo_uri: str, timeout_ms: int = 3000, db_name: str = APP_DB_NAME):
        self._app_mongo_uri = app_mongo_uri
        self._db_name = db_name
        self._timeout_ms = int(timeout_ms)
        self._app_client: Optional[MongoClient] = None
        self._lock = RLock()

    @property
    def sanitized_uri(self) -> str:
        return sanitize_mongo_uri(self._app_mongo_uri)

    def connect_app(self) -> None:
        """Initialize app Mongo client if needed."""
        with self._lock:
            if self._app_client is not None:
                return
            # MongoClient is thread-safe and manages internal pooling; connect lazily on first use.
            self._app_client = MongoClient(
                self._app_mongo_uri,
                connect=False,
                tz_aware=True,
                serverSelectionTimeoutMS=self._timeout_ms,
                connectTimeoutMS=self._timeout_ms,
                socketTimeoutMS=self._timeout_ms,
            )

    # PUBLIC_INTERFACE
    def ping(self, timeout_ms: int = 1500) -> bool:
        """Ping the configured MongoDB to validate connectivity."""
        try:
            if self._app_client is None:
                self.connect_app()
            assert self._app_client is not None
            self._app_client.admin.command("ping", maxTimeMS=int(max(250, timeout_ms)))
            return True
        except PyMongoError:
            logger.exception("Mongo ping failed (PyMongoError)")
            return False

    def close(self) -> None:
        """Close the app Mongo client."""
        with self._lock:
            if self._app_client is not None:
                try:
                    self._app_client.close()
                except PyMongoError:
                    logger.exception("Error closing app MongoClient")
                self._app_client = None

    def app_db(self) -> Database:
        """Return the fleetmon database handle."""
        if self._app_client is None:
            self.connect_app()
        assert self._app_client is not None
        return self._app_client[self._db_name]

    def collections(self) -> MongoCollections:
        """Return app collections."""
        db = self.app_db()
        return MongoCollections(alerts=db["alerts"], notifications=db["notifications"], alert_dedup=db["alert_dedup"])

    def init_indexes(self) -> None:
        """Create required indexes (idempotent)."""
        cols = self.collections()

        # ---- Alerts ----
        cols.alerts.create_index([("organizationId", ASCENDING), ("createdAt", DESCENDING)], name="idx_alerts_org_createdAt")
        # Dedup lookup: same org + type + threshold key within the recent window.
        cols.alerts.create_index(
            [
                ("organizationId", ASCENDING),
                ("type", ASCENDING),
                ("metadata.threshold", ASCENDING),
                ("createdAt", DESCENDING),
            ],
            name="idx_alerts_dedup",
        )
        cols.alerts.create_index([("createdAt", ASCENDING)], name="idx_alerts_createdAt")

        # ---- Notifications ----
        cols.notifications.create_index(
            [("organizationId", ASCENDING), ("timestamp", DESCENDING)], name="idx_notifications_org_timestamp"
        )
        cols.notifications.create_index([("timestamp", ASCENDING)], name="idx_notifications_timestamp")
        # At most one notification per alert; manual notifications (alertId null) are unconstrained.
        cols.notifications.create_index(
            [("alertId", ASCENDING)],
            name="uniq_notifications_alertId",
            unique=True,
            partialFilterExpression={"alertId": {"$type": "string"}},
        )

        # ---- Dedup claims ----
        # Expired claims are removed by the TTL monitor; claim() also treats them as free.
        cols.alert_dedup.create_index([("until", ASCENDING)], name="ttl_alert_dedup_until", expireAfterSeconds=0)


class MongoBackend(RecordBackend):
    """RecordBackend over one collection; records use their "id" as _id so writes are per-document atomic."""

    def __init__(self, collection: Collection, kind: str):
        self.kind = kind
        self._col = collection

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(str(exc), store=self.kind, operation=operation) from exc
        except _TIMEOUT_ERRORS as exc:
            raise StorageTimeoutError(str(exc), store=self.kind, operation=operation) from exc
        except PyMongoError as exc:
            raise StorageError(str(exc), store=self.kind, operation=operation) from exc

    @staticmethod
    def _to_doc(record: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(record)
        doc["_id"] = record["id"]
        return doc

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(doc)
        out.pop("_id", None)
        return out

    @staticmethod
    def _filter(query: RecordQuery) -> Dict[str, Any]:
        q: Dict[str, Any] = dict(query.equals)
        if query.since is not None or query.before is not None:
            window: Dict[str, Any] = {}
            if query.since is not None:
                window["$gte"] = query.since
            if query.before is not None:
                window["$lt"] = query.before
            q[query.time_field] = window
        return q

    def insert(self, doc: Dict[str, Any]) -> None:
        with self._errors("insert"):
            self._col.insert_one(self._to_doc(doc))

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._errors("get"):
            doc = self._col.find_one({"_id": record_id})
        return self._from_doc(doc) if doc else None

    def update_fields(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._errors("update_fields"):
            doc = self._col.find_one_and_update(
                {"_id": record_id}, {"$set": dict(fields)}, return_document=ReturnDocument.AFTER
            )
        return self._from_doc(doc) if doc else None

    def delete(self, record_id: str) -> bool:
        with self._errors("delete"):
            res = self._col.delete_one({"_id": record_id})
        return res.deleted_count > 0

    def find(self, query: RecordQuery) -> Tuple[List[Dict[str, Any]], int]:
        q = self._filter(query)
        with self._errors("find"):
            total = int(self._col.count_documents(q))
            cursor = self._col.find(q).sort([(query.time_field, DESCENDING), ("_id", DESCENDING)])
            if query.offset:
                cursor = cursor.skip(int(query.offset))
            if query.limit is not None:
                if int(query.limit) <= 0:
                    return [], total
                cursor = cursor.limit(int(query.limit))
            docs = list(cursor)
        return [self._from_doc(d) for d in docs], total

    def count(self, query: RecordQuery) -> int:
        with self._errors("count"):
            return int(self._col.count_documents(self._filter(query)))

    def update_many(self, query: RecordQuery, fields: Dict[str, Any]) -> int:
        with self._errors("update_many"):
            res = self._col.update_many(self._filter(query), {"$set": dict(fields)})
        return int(res.modified_count)

    def delete_many(self, query: RecordQuery) -> int:
        with self._errors("delete_many"):
            res = self._col.delete_many(self._filter(query))
        return int(res.deleted_count)

    def describe(self) -> Dict[str, Any]:
        return {
            "backend": "mongo",
            "kind": self.kind,
            "database": self._col.database.name,
            "collection": self._col.name,
            "schemaVersion": SCHEMA_VERSION,
            "records": self.count(RecordQuery()),
        }


class MongoDedupLedger(DedupLedger):
    """
    DedupLedger over one collection, shared by every worker using the same database.

    One document per key (`_id` = key). A claim is an upsert that only matches an expired
    document, so a live claim makes the upsert collide on `_id` instead.
    """

    def __init__(self, collection: Collection):
        self._col = collection

    @contextmanager
    def _errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except _TIMEOUT_ERRORS as exc:
            raise StorageTimeoutError(str(exc), store="alert_dedup", operation=operation) from exc
        except PyMongoError as exc:
            raise StorageError(str(exc), store="alert_dedup", operation=operation) from exc

    # PUBLIC_INTERFACE
    def claim(self, key: str, now: datetime, until: datetime) -> bool:
        """Take the claim on `key` until `until`; False while another worker holds it."""
        with self._errors("claim"):
            try:
                self._col.update_one(
                    {"_id": key, "until": {"$lte": now}},
                    {"$set": {"until": until, "claimedAt": now}},
                    upsert=True,
                )
            except DuplicateKeyError:
                logger.debug("Dedup claim %s already held", key)
                return False
        return True

    # PUBLIC_INTERFACE
    def release(self, key: str, until: datetime) -> None:
        """Drop our claim on `key` so a retry is not suppressed."""
        with self._errors("release"):
            self._col.delete_one({"_id": key, "until": until})
