from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from src.api.db.base import RecordQuery
from src.api.schemas.notifications import (
    NotificationCreate,
    NotificationOut,
    NotificationsQuery,
    NotificationUpdate,
)
from src.api.services.repository import Repository


def _notifications_query_from_filters(q: NotificationsQuery) -> RecordQuery:
    equals: Dict[str, Any] = {}
    if q.organization_id:
        equals["organizationId"] = q.organization_id
    if q.read is not None:
        equals["read"] = q.read
    if q.driver_id:
        equals["driverId"] = q.driver_id
    return RecordQuery(
        equals=equals,
        time_field="timestamp",
        since=q.created_after,
        offset=int(q.offset),
        limit=int(q.limit),
    )


class NotificationsRepository(Repository[NotificationOut]):
    """Notification store: CRUD, filtered feed, read-state, retention and per-alert lookup."""

    model = NotificationOut
    id_prefix = "notif"
    time_field = "timestamp"
    read_field = "read"

    # PUBLIC_INTERFACE
    def create(self, payload: NotificationCreate) -> NotificationOut:
        """Assign id + timestamp and persist a new notification."""
        if not payload.organization_id:
            raise ValueError("organization_id is required to create a notification")
        fields = payload.model_dump(by_alias=True)
        fields["timestamp"] = self.now()
        return self._insert(fields)

    # PUBLIC_INTERFACE
    def query(self, filters: NotificationsQuery) -> Tuple[List[NotificationOut], int]:
        """List notifications newest first; total counts all matches before offset/limit."""
        return self._page(_notifications_query_from_filters(filters))

    # PUBLIC_INTERFACE
    def update(self, notification_id: str, payload: NotificationUpdate) -> Optional[NotificationOut]:
        """Merge read-state/metadata. None if not found."""
        changes = payload.model_dump(by_alias=True, exclude_none=True, exclude_unset=True)
        return self._merge(notification_id, changes)

    # PUBLIC_INTERFACE
    def exists_for_alert(self, alert_id: str) -> bool:
        """True if any notification already references this alert."""
        return self.backend.count(RecordQuery(equals={"alertId": alert_id}, time_field="timestamp")) > 0

    # PUBLIC_INTERFACE
    def unread_count(self, organization_id: str) -> int:
        return self.backend.count(
            RecordQuery(equals={"organizationId": organization_id, "read": False}, time_field="timestamp")
        )
