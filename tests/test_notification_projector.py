from __future__ import annotations

from datetime import timedelta

import pytest

from src.api.schemas.alerts import AlertCreate
from src.api.schemas.notifications import NotificationsQuery
from src.api.services.notification_projector import action_url_for, notification_type_for


def _create_alert(alerts_repo, **overrides):
    data = {
        "title": "Critical Health Alert: Heart Rate",
        "message": "Jane Doe's heart rate (130 bpm) is outside normal range",
        "type": "HEALTH",
        "severity": "CRITICAL",
        "organizationId": "org_a",
        "metadata": {
            "kind": "health",
            "driverId": "drv_1",
            "driverName": "Jane Doe",
            "parameter": "Heart Rate",
            "value": 130,
            "threshold": "heartRate",
            "unit": "bpm",
        },
    }
    data.update(overrides)
    return alerts_repo.create(AlertCreate(**data))


@pytest.mark.parametrize(
    "severity,expected",
    [("CRITICAL", "error"), ("ERROR", "error"), ("WARNING", "warning"), ("INFO", "info"), ("OTHER", "success")],
)
def test_notification_type_mapping(severity, expected):
    assert notification_type_for(severity) == expected


@pytest.mark.parametrize(
    "alert_type,expected",
    [
        ("HEALTH", "/health"),
        ("ATTENDANCE", "/attendance"),
        ("ALCOHOL_DETECTION", "/monitoring"),
        ("SAFETY", "/monitoring"),
        ("SYSTEM", "/alerts"),
        ("OBJECT_DETECTION", "/alerts"),
    ],
)
def test_action_url_mapping(alert_type, expected):
    assert action_url_for(alert_type) == expected


def test_projection_copies_alert_fields(projector, alerts_repo):
    alert = _create_alert(alerts_repo)

    note = projector.project_from_alert(alert, "org_a")

    assert note is not None
    assert note.title == alert.title
    assert note.message == alert.message
    assert note.type == "error"
    assert note.read is False
    assert note.alert_id == alert.id
    assert note.driver_id == "drv_1"
    assert note.action_url == "/health"
    assert note.organization_id == "org_a"
    assert note.metadata.threshold == "heartRate"


def test_projection_is_idempotent(projector, alerts_repo, notifications_repo, metrics):
    alert = _create_alert(alerts_repo)

    assert projector.project_from_alert(alert, "org_a") is not None
    assert projector.project_from_alert(alert, "org_a") is None

    _, total = notifications_repo.query(NotificationsQuery(organizationId="org_a"))
    assert total == 1
    assert metrics.value("fleetmon_notifications_projected_total") == 1


def test_opted_out_alert_is_not_projected(projector, alerts_repo, notifications_repo):
    alert = _create_alert(alerts_repo, metadata={"sendNotification": False})

    assert projector.project_from_alert(alert, "org_a") is None
    assert notifications_repo.unread_count("org_a") == 0


def test_sync_projects_missing_and_rerun_creates_nothing(projector, alerts_repo, notifications_repo):
    first = _create_alert(alerts_repo)
    projector.project_from_alert(first, "org_a")
    _create_alert(alerts_repo, severity="WARNING")
    _create_alert(alerts_repo, type="SAFETY", metadata={"driverId": "drv_2"})

    since = alerts_repo.now() - timedelta(hours=24)
    recent = alerts_repo.created_since("org_a", since)

    assert projector.sync_from_alerts(recent, "org_a") == 2
    assert projector.sync_from_alerts(recent, "org_a") == 0
    notes, total = notifications_repo.query(NotificationsQuery(organizationId="org_a"))
    assert total == 3
    assert {n.alert_id for n in notes} == {a.id for a in recent}
    assert {n.driver_id for n in notes} == {"drv_1", "drv_2"}
