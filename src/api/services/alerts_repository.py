from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from src.api.db.base import RecordQuery
from src.api.schemas.alerts import (
    AlertCreate,
    AlertOut,
    AlertSeverity,
    AlertStats,
    AlertsQuery,
    AlertType,
    AlertUpdate,
)
from src.api.services.repository import Repository


def _alerts_query_from_filters(q: AlertsQuery) -> RecordQuery:
    equals: Dict[str, Any] = {}
    if q.organization_id:
        equals["organizationId"] = q.organization_id
    if q.type:
        equals["type"] = q.type
    if q.severity:
        equals["severity"] = q.severity
    if q.is_read is not None:
        equals["isRead"] = q.is_read
    return RecordQuery(
        equals=equals,
        time_field="createdAt",
        since=q.created_after,
        offset=int(q.offset),
        limit=int(q.limit),
    )


class AlertsRepository(Repository[AlertOut]):
    """Alert store: CRUD, filtered feed, read-state, dedup lookup, retention and stats."""

    model = AlertOut
    id_prefix = "alert"
    time_field = "createdAt"
    read_field = "isRead"
    updated_field = "updatedAt"

    # PUBLIC_INTERFACE
    def create(self, payload: AlertCreate) -> AlertOut:
        """Assign id + timestamps and persist a new alert."""
        if not payload.organization_id:
            raise ValueError("organization_id is required to create an alert")
        now = self.now()
        fields = payload.model_dump(by_alias=True)
        fields.update({"createdAt": now, "updatedAt": now})
        return self._insert(fields)

    # PUBLIC_INTERFACE
    def query(self, filters: AlertsQuery) -> Tuple[List[AlertOut], int]:
        """List alerts newest first; total counts all matches before offset/limit."""
        return self._page(_alerts_query_from_filters(filters))

    # PUBLIC_INTERFACE
    def update(self, alert_id: str, payload: AlertUpdate) -> Optional[AlertOut]:
        """Merge the mutable fields (isRead, metadata). None if not found."""
        changes = payload.model_dump(by_alias=True, exclude_none=True, exclude_unset=True)
        return self._merge(alert_id, changes)

    # PUBLIC_INTERFACE
    def find_recent(
        self,
        organization_id: str,
        alert_type: AlertType,
        threshold_key: str,
        since: datetime,
    ) -> Optional[AlertOut]:
        """Newest alert of this org/type for this threshold key created at or after `since`."""
        items, _ = self._page(
            RecordQuery(
                equals={
                    "organizationId": organization_id,
                    "type": AlertType(alert_type).value,
                    "metadata.threshold": threshold_key,
                },
                time_field="createdAt",
                since=since,
                limit=1,
            )
        )
        return items[0] if items else None

    # PUBLIC_INTERFACE
    def created_since(self, organization_id: str, since: datetime) -> List[AlertOut]:
        """All alerts of an organization created at or after `since`, newest first."""
        items, _ = self._page(
            RecordQuery(equals={"organizationId": organization_id}, time_field="createdAt", since=since)
        )
        return items

    # PUBLIC_INTERFACE
    def stats(self, organization_id: str) -> AlertStats:
        """Counters for the dashboard: total, unread, critical, by type and by severity."""
        items, total = self._page(RecordQuery(equals={"organizationId": organization_id}))
        by_type = {t.value: 0 for t in AlertType}
        by_severity = {s.value: 0 for s in AlertSeverity}
        unread = critical = 0
        for a in items:
            by_type[a.type] = by_type.get(a.type, 0) + 1
            by_severity[a.severity] = by_severity.get(a.severity, 0) + 1
            if not a.is_read:
                unread += 1
            if a.severity == AlertSeverity.CRITICAL:
                critical += 1
        return AlertStats(total=total, unread=unread, critical=critical, byType=by_type, bySeverity=by_severity)
