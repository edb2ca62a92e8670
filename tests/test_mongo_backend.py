from __future__ import annotations

import os
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.api.db.base import DuplicateRecordError, RecordQuery
from src.api.db.mongo import MongoBackend, MongoDedupLedger, MongoManager

MONGO_URI = os.getenv("BACKEND_MONGO_URI")

pytestmark = pytest.mark.skipif(not MONGO_URI, reason="BACKEND_MONGO_URI not set; Mongo integration tests skipped")

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def mongo_manager() -> Iterator[MongoManager]:
    """Manager bound to a throwaway database, dropped after the test."""
    assert MONGO_URI is not None
    manager = MongoManager(MONGO_URI, timeout_ms=3000, db_name=f"fleetmon_test_{uuid4().hex[:8]}")
    assert manager.ping()
    manager.init_indexes()
    try:
        yield manager
    finally:
        manager.app_db().client.drop_database(manager.app_db().name)
        manager.close()


def _doc(i: int, **extra):
    return {"id": f"rec_{i}", "organizationId": "org_a", "createdAt": T0 + timedelta(minutes=i), "isRead": False, **extra}


def test_crud_and_paginated_find(mongo_manager: MongoManager):
    backend = MongoBackend(mongo_manager.collections().alerts, "alerts")
    for i in range(6):
        backend.insert(_doc(i, metadata={"threshold": "heartRate" if i % 2 else "oxygenSaturation"}))

    docs, total = backend.find(RecordQuery(offset=1, limit=2))
    assert total == 6
    assert [d["id"] for d in docs] == ["rec_4", "rec_3"]
    assert "_id" not in docs[0]
    assert docs[0]["createdAt"] == T0 + timedelta(minutes=4)

    assert backend.count(RecordQuery(equals={"metadata.threshold": "heartRate"})) == 3
    assert backend.update_fields("rec_0", {"isRead": True})["isRead"] is True
    assert backend.update_fields("missing", {"isRead": True}) is None
    assert backend.get("rec_0")["isRead"] is True
    assert backend.update_many(RecordQuery(equals={"isRead": False}), {"isRead": True}) == 5
    assert backend.delete_many(RecordQuery(before=T0 + timedelta(minutes=2))) == 2
    assert backend.delete("rec_5") is True
    assert backend.delete("rec_5") is False
    assert backend.describe()["records"] == 3

    with pytest.raises(DuplicateRecordError):
        backend.insert(_doc(2))


def test_unique_alert_id_on_notifications(mongo_manager: MongoManager):
    backend = MongoBackend(mongo_manager.collections().notifications, "notifications")
    backend.insert({"id": "n1", "alertId": "alert_1", "timestamp": T0})
    # Manual notifications without an alert are not constrained.
    backend.insert({"id": "n2", "alertId": None, "timestamp": T0})
    backend.insert({"id": "n3", "alertId": None, "timestamp": T0})

    with pytest.raises(DuplicateRecordError):
        backend.insert({"id": "n4", "alertId": "alert_1", "timestamp": T0})


def _claim_time() -> datetime:
    # Ahead of the wall clock so the TTL monitor never removes claims mid-test.
    return datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=365)


def test_dedup_claim_is_exclusive_until_it_expires(mongo_manager: MongoManager):
    t0 = _claim_time()
    col = mongo_manager.collections().alert_dedup
    first = MongoDedupLedger(col)
    # A second worker talks to the same collection through its own ledger.
    second = MongoDedupLedger(col)
    until = t0 + timedelta(minutes=60)

    assert first.claim("org_a:HEALTH:heartRate", t0, until) is True
    assert second.claim("org_a:HEALTH:heartRate", t0 + timedelta(minutes=1), until) is False
    assert second.claim("org_b:HEALTH:heartRate", t0, until) is True

    later = t0 + timedelta(minutes=61)
    assert second.claim("org_a:HEALTH:heartRate", later, later + timedelta(minutes=60)) is True
    assert first.claim("org_a:HEALTH:heartRate", later, later + timedelta(minutes=60)) is False


def test_released_dedup_claim_can_be_taken_again(mongo_manager: MongoManager):
    t0 = _claim_time()
    ledger = MongoDedupLedger(mongo_manager.collections().alert_dedup)
    until = t0 + timedelta(minutes=60)

    assert ledger.claim("org_a:HEALTH:oxygenSaturation", t0, until) is True
    # Releasing with a stale `until` leaves the live claim alone.
    ledger.release("org_a:HEALTH:oxygenSaturation", t0)
    assert ledger.claim("org_a:HEALTH:oxygenSaturation", t0, until) is False

    ledger.release("org_a:HEALTH:oxygenSaturation", until)
    assert ledger.claim("org_a:HEALTH:oxygenSaturation", t0, until) is True
