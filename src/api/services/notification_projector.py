from __future__ import annotations

import logging
from threading import Lock
from typing import Iterable, Optional

from src.api.db.base import DuplicateRecordError, StorageError
from src.api.schemas.alerts import AlertOut, AlertSeverity, AlertType
from src.api.schemas.notifications import NotificationCreate, NotificationOut, NotificationType
from src.api.services.metrics import AlertingMetrics
from src.api.services.notifications_repository import NotificationsRepository

logger = logging.getLogger(__name__)


_SEVERITY_TO_TYPE = {
    AlertSeverity.CRITICAL.value: NotificationType.error,
    AlertSeverity.ERROR.value: NotificationType.error,
    AlertSeverity.WARNING.value: NotificationType.warning,
    AlertSeverity.INFO.value: NotificationType.info,
}

_TYPE_TO_ACTION_URL = {
    AlertType.HEALTH.value: "/health",
    AlertType.ATTENDANCE.value: "/attendance",
    AlertType.ALCOHOL_DETECTION.value: "/monitoring",
    AlertType.SAFETY.value: "/monitoring",
}


def notification_type_for(severity: str) -> NotificationType:
    return _SEVERITY_TO_TYPE.get(str(severity), NotificationType.success)


def action_url_for(alert_type: str) -> str:
    return _TYPE_TO_ACTION_URL.get(str(alert_type), "/alerts")


class NotificationProjector:
    """
    Derives at most one Notification per Alert.

    The existence check and the insert run under one lock; the Mongo backend also backs this
    with a unique index on alertId so concurrent workers cannot double-project.
    """

    def __init__(self, notifications: NotificationsRepository, metrics: Optional[AlertingMetrics] = None):
        self._notifications = notifications
        self._metrics = metrics or AlertingMetrics()
        self._lock = Lock()

    # PUBLIC_INTERFACE
    def project_from_alert(self, alert: AlertOut, organization_id: str) -> Optional[NotificationOut]:
        """
        Create the notification for `alert`, or return None when one already exists or the
        alert opted out (metadata sendNotification=false).

        Raises StorageError; use try_project_from_alert on fire-and-forget paths.
        """
        if not alert.metadata.wants_notification():
            return None

        with self._lock:
            if self._notifications.exists_for_alert(alert.id):
                return None
            try:
                created = self._notifications.create(
                    NotificationCreate(
                        title=alert.title,
                        message=alert.message,
                        type=notification_type_for(alert.severity),
                        read=False,
                        driverId=alert.metadata.driver(),
                        actionUrl=action_url_for(alert.type),
                        organizationId=organization_id,
                        alertId=alert.id,
                        metadata=alert.metadata.model_dump(by_alias=True),
                    )
                )
            except DuplicateRecordError:
                # Another worker projected it between our check and insert.
                return None

        self._metrics.notifications_projected.inc()
        return created

    # PUBLIC_INTERFACE
    def try_project_from_alert(self, alert: AlertOut, organization_id: str) -> Optional[NotificationOut]:
        """project_from_alert that logs and counts storage failures instead of raising."""
        try:
            return self.project_from_alert(alert, organization_id)
        except StorageError as exc:
            logger.exception("Projecting notification for alertId=%s failed", alert.id)
            self._metrics.storage_failure(exc.store or "notifications", exc.operation or "project")
            return None

    # PUBLIC_INTERFACE
    def sync_from_alerts(self, alerts: Iterable[AlertOut], organization_id: str) -> int:
        """Project every alert; re-running over already-synced alerts creates nothing."""
        created = 0
        for alert in alerts:
            if self.try_project_from_alert(alert, organization_id) is not None:
                created += 1
        if created:
            logger.info("Synced %d notification(s) from alerts for organizationId=%s", created, organization_id)
        return created
