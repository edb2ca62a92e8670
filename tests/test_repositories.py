from __future__ import annotations

from datetime import timedelta

import pytest

from src.api.db.file_store import JsonlFileBackend
from src.api.schemas.alerts import AlertCreate, AlertsQuery, AlertUpdate, OpaqueMetadata
from src.api.schemas.notifications import NotificationCreate, NotificationsQuery, NotificationUpdate
from src.api.services.alerts_repository import AlertsRepository


def _alert(org="org_a", **overrides) -> AlertCreate:
    data = {
        "title": "Critical Health Alert: Heart Rate",
        "message": "Jane Doe's heart rate (130 bpm) is outside normal range",
        "type": "HEALTH",
        "severity": "CRITICAL",
        "organizationId": org,
        "metadata": {"driverId": "drv_1"},
    }
    data.update(overrides)
    return AlertCreate(**data)


def _notification(org="org_a", **overrides) -> NotificationCreate:
    data = {"title": "Heads up", "message": "Something happened", "type": "info", "organizationId": org}
    data.update(overrides)
    return NotificationCreate(**data)


def test_alert_create_get_round_trip(alerts_repo):
    created = alerts_repo.create(_alert())

    assert created.id.startswith("alert_")
    assert created.is_read is False
    assert created.created_at == created.updated_at
    assert created.schema_version == 1
    # Untagged metadata dicts are kept as opaque metadata.
    assert isinstance(created.metadata, OpaqueMetadata)
    assert created.metadata.driver() == "drv_1"

    fetched = alerts_repo.get(created.id)
    assert fetched == created


def test_alert_create_requires_organization(alerts_repo):
    with pytest.raises(ValueError):
        alerts_repo.create(_alert(org=None))


def test_pagination_newest_first_with_total(alerts_repo):
    ids = [alerts_repo.create(_alert(title=f"alert {i}")).id for i in range(12)]

    page, total = alerts_repo.query(AlertsQuery(organizationId="org_a", limit=5, offset=5))

    assert total == 12
    assert [a.id for a in page] == list(reversed(ids))[5:10]


def test_query_filters(alerts_repo):
    alerts_repo.create(_alert())
    warning = alerts_repo.create(_alert(severity="WARNING", type="SAFETY"))
    alerts_repo.create(_alert(org="org_b"))

    items, total = alerts_repo.query(AlertsQuery(organizationId="org_a", severity="WARNING"))
    assert total == 1 and items[0].id == warning.id

    items, total = alerts_repo.query(AlertsQuery(organizationId="org_a", type="SAFETY", isRead=False))
    assert total == 1

    after = alerts_repo.now()
    later = alerts_repo.create(_alert())
    items, total = alerts_repo.query(AlertsQuery(organizationId="org_a", createdAfter=after))
    assert [a.id for a in items] == [later.id]


def test_update_mark_read_and_delete(alerts_repo):
    created = alerts_repo.create(_alert())

    updated = alerts_repo.update(created.id, AlertUpdate(metadata={"note": "seen by ops"}))
    assert updated is not None
    assert updated.metadata.data == {"note": "seen by ops"}
    assert updated.updated_at > created.updated_at

    read = alerts_repo.mark_read(created.id)
    assert read is not None and read.is_read is True
    assert alerts_repo.get(created.id).is_read is True

    assert alerts_repo.delete(created.id) is True
    assert alerts_repo.get(created.id) is None
    assert alerts_repo.delete(created.id) is False
    assert alerts_repo.mark_read(created.id) is None
    assert alerts_repo.update(created.id, AlertUpdate(isRead=True)) is None


def test_mark_all_read_scoped_to_organization(alerts_repo):
    for _ in range(3):
        alerts_repo.create(_alert())
    alerts_repo.create(_alert(org="org_b"))

    assert alerts_repo.mark_all_read("org_a") == 3
    assert alerts_repo.mark_all_read("org_a") == 0
    assert alerts_repo.stats("org_a").unread == 0
    assert alerts_repo.stats("org_b").unread == 1


def test_purge_removes_only_expired(alerts_repo, clock):
    old = [alerts_repo.create(_alert()) for _ in range(2)]
    clock.advance(days=31)
    fresh = alerts_repo.create(_alert())

    assert alerts_repo.purge(30) == 2
    assert all(alerts_repo.get(a.id) is None for a in old)
    assert alerts_repo.get(fresh.id) is not None
    assert alerts_repo.purge(30) == 0


def test_stats_counts_by_type_and_severity(alerts_repo):
    alerts_repo.create(_alert())
    alerts_repo.create(_alert(type="SAFETY", severity="WARNING"))
    read = alerts_repo.create(_alert(type="SAFETY", severity="CRITICAL"))
    alerts_repo.mark_read(read.id)

    stats = alerts_repo.stats("org_a")
    assert stats.total == 3
    assert stats.unread == 2
    assert stats.critical == 2
    assert stats.by_type["HEALTH"] == 1
    assert stats.by_type["SAFETY"] == 2
    assert stats.by_type["SYSTEM"] == 0
    assert stats.by_severity["WARNING"] == 1


def test_find_recent_matches_threshold_key(alerts_repo, clock):
    alerts_repo.create(_alert(metadata={
        "kind": "health",
        "driverId": "drv_1",
        "driverName": "Jane Doe",
        "parameter": "Heart Rate",
        "value": 130,
        "threshold": "heartRate",
    }))
    since = alerts_repo.now() - timedelta(minutes=60)

    assert alerts_repo.find_recent("org_a", "HEALTH", "heartRate", since) is not None
    assert alerts_repo.find_recent("org_a", "HEALTH", "oxygenSaturation", since) is None
    assert alerts_repo.find_recent("org_b", "HEALTH", "heartRate", since) is None
    assert alerts_repo.find_recent("org_a", "HEALTH", "heartRate", clock.now + timedelta(seconds=5)) is None


def test_alerts_survive_reopen(tmp_path, alerts_repo, clock):
    created = alerts_repo.create(_alert())
    alerts_repo.mark_read(created.id)

    reopened = AlertsRepository(JsonlFileBackend(tmp_path / "alerts.jsonl", "alerts"), clock=clock)
    fetched = reopened.get(created.id)
    assert fetched is not None
    assert fetched.is_read is True
    assert fetched.created_at == created.created_at


def test_notifications_crud_unread_and_filters(notifications_repo):
    a = notifications_repo.create(_notification(driverId="drv_1"))
    b = notifications_repo.create(_notification())
    notifications_repo.create(_notification(org="org_b"))

    assert a.id.startswith("notif_")
    assert notifications_repo.unread_count("org_a") == 2

    items, total = notifications_repo.query(NotificationsQuery(organizationId="org_a", driverId="drv_1"))
    assert total == 1 and items[0].id == a.id

    items, _ = notifications_repo.query(NotificationsQuery(organizationId="org_a"))
    assert [n.id for n in items] == [b.id, a.id]

    notifications_repo.update(b.id, NotificationUpdate(read=True))
    assert notifications_repo.unread_count("org_a") == 1
    items, total = notifications_repo.query(NotificationsQuery(organizationId="org_a", read=False))
    assert total == 1 and items[0].id == a.id

    assert notifications_repo.mark_all_read("org_a") == 1
    assert notifications_repo.unread_count("org_a") == 0
    assert notifications_repo.unread_count("org_b") == 1


def test_notifications_purge_by_timestamp(notifications_repo, clock):
    notifications_repo.create(_notification())
    clock.advance(days=8)
    kept = notifications_repo.create(_notification())

    assert notifications_repo.purge(7) == 1
    items, total = notifications_repo.query(NotificationsQuery(organizationId="org_a"))
    assert total == 1 and items[0].id == kept.id


def test_exists_for_alert(notifications_repo):
    assert notifications_repo.exists_for_alert("alert_x") is False
    notifications_repo.create(_notification(alertId="alert_x"))
    assert notifications_repo.exists_for_alert("alert_x") is True


class _BulkReadDuringGet(JsonlFileBackend):
    """Runs mark_all_read on the owning repository right after the first get()."""

    repo = None
    fired = False

    def get(self, record_id):
        doc = super().get(record_id)
        if not self.fired and self.repo is not None:
            self.fired = True
            self.repo.mark_all_read("org_a")
        return doc


def test_update_does_not_undo_concurrent_mark_all_read(tmp_path, clock):
    backend = _BulkReadDuringGet(tmp_path / "alerts.jsonl", "alerts")
    repo = AlertsRepository(backend, clock=clock)
    created = repo.create(_alert())
    backend.repo = repo

    updated = repo.update(created.id, AlertUpdate(metadata={"note": "escalated"}))

    assert backend.fired
    assert updated is not None
    assert updated.is_read is True
    assert updated.metadata.data == {"note": "escalated"}
    assert repo.get(created.id).is_read is True


def test_update_rejects_invalid_changes_without_writing(alerts_repo):
    created = alerts_repo.create(_alert())

    with pytest.raises(ValueError):
        alerts_repo._merge(created.id, {"severity": "SEVERE"})

    assert alerts_repo.get(created.id).severity == "CRITICAL"
