from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.api.schemas.common import CountResponse, ErrorResponse
from src.api.schemas.notifications import (
    NotificationCreate,
    NotificationListResponse,
    NotificationOut,
    NotificationsQuery,
    NotificationUpdate,
    SyncResponse,
    UnreadCountResponse,
)
from src.api.state import AppState, get_state

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


def _org(request: Request, organization_id: Optional[str]) -> str:
    return organization_id or get_state(request.app).config.default_organization_id


def _sync_recent(state: AppState, organization_id: str) -> SyncResponse:
    since = state.alerts.now() - timedelta(hours=state.config.notification_sync_window_hours)
    alerts = state.alerts.created_since(organization_id, since)
    created = state.projector.sync_from_alerts(alerts, organization_id)
    return SyncResponse(scanned=len(alerts), created=created)


@router.get(
    "",
    response_model=NotificationListResponse,
    summary="List notifications",
    description=(
        "List notifications with filters: read, driverId, createdAfter. With syncAlerts=true, "
        "notifications are first projected from the organization's recent alerts."
    ),
    operation_id="list_notifications",
)
def list_notifications(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    read: Optional[bool] = Query(default=None),
    driver_id: Optional[str] = Query(default=None, alias="driverId"),
    created_after: Optional[datetime] = Query(default=None, alias="createdAfter"),
    sync_alerts: bool = Query(False, alias="syncAlerts"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
    page: Optional[int] = Query(default=None, ge=1),
) -> NotificationListResponse:
    """List notifications with filters and pagination."""
    state = get_state(request.app)
    org = _org(request, organization_id)
    if sync_alerts:
        _sync_recent(state, org)

    filters = NotificationsQuery(
        organizationId=org,
        read=read,
        driverId=driver_id,
        createdAfter=created_after,
        limit=limit,
        offset=(page - 1) * limit if page else offset,
    )
    items, total = state.notifications.query(filters)
    return NotificationListResponse(items=items, total=total)


@router.post(
    "",
    response_model=NotificationOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}},
    summary="Create notification",
    operation_id="create_notification",
)
def create_notification(request: Request, payload: NotificationCreate) -> NotificationOut:
    """Create a notification directly."""
    if not payload.title.strip() or not payload.message.strip():
        raise HTTPException(status_code=400, detail="title and message must not be empty")
    payload = payload.model_copy(update={"organization_id": _org(request, payload.organization_id)})
    return get_state(request.app).notifications.create(payload)


@router.get(
    "/unread-count",
    response_model=UnreadCountResponse,
    summary="Unread notifications count",
    operation_id="notifications_unread_count",
)
def unread_count(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
) -> UnreadCountResponse:
    """Count unread notifications for an organization."""
    org = _org(request, organization_id)
    return UnreadCountResponse(organizationId=org, unread=get_state(request.app).notifications.unread_count(org))


@router.post(
    "/mark-all-read",
    response_model=CountResponse,
    summary="Mark all notifications read",
    operation_id="mark_all_notifications_read",
)
def mark_all_read(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
) -> CountResponse:
    """Mark every unread notification of an organization as read."""
    return CountResponse(count=get_state(request.app).notifications.mark_all_read(_org(request, organization_id)))


@router.post(
    "/sync",
    response_model=SyncResponse,
    summary="Sync notifications from alerts",
    description="Project notifications from alerts created within NOTIFICATION_SYNC_WINDOW_HOURS. Idempotent.",
    operation_id="sync_notifications",
)
def sync_notifications(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
) -> SyncResponse:
    """Project notifications from recent alerts."""
    return _sync_recent(get_state(request.app), _org(request, organization_id))


@router.post(
    "/purge",
    response_model=CountResponse,
    summary="Purge old notifications",
    description="Delete notifications older than daysToKeep days (defaults to NOTIFICATION_RETENTION_DAYS).",
    operation_id="purge_notifications",
)
def purge_notifications(
    request: Request,
    days_to_keep: Optional[int] = Query(default=None, alias="daysToKeep", ge=0, le=3650),
) -> CountResponse:
    """Apply retention to notifications."""
    state = get_state(request.app)
    days = state.config.notification_retention_days if days_to_keep is None else days_to_keep
    return CountResponse(count=state.notifications.purge(days))


@router.get(
    "/{notification_id}",
    response_model=NotificationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get notification",
    operation_id="get_notification",
)
def get_notification(
    request: Request, notification_id: str = Path(..., description="Notification id.")
) -> NotificationOut:
    """Get a notification by id."""
    item = get_state(request.app).notifications.get(notification_id)
    if not item:
        raise HTTPException(status_code=404, detail="notification not found")
    return item


@router.patch(
    "/{notification_id}",
    response_model=NotificationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Update notification",
    operation_id="patch_notification",
)
def patch_notification(
    request: Request,
    payload: NotificationUpdate,
    notification_id: str = Path(..., description="Notification id."),
) -> NotificationOut:
    """Patch a notification."""
    updated = get_state(request.app).notifications.update(notification_id, payload)
    if not updated:
        raise HTTPException(status_code=404, detail="notification not found")
    return updated


@router.patch(
    "/{notification_id}/read",
    response_model=NotificationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Mark notification read",
    operation_id="mark_notification_read",
)
def mark_notification_read(
    request: Request, notification_id: str = Path(..., description="Notification id.")
) -> NotificationOut:
    """Mark one notification as read."""
    updated = get_state(request.app).notifications.mark_read(notification_id)
    if not updated:
        raise HTTPException(status_code=404, detail="notification not found")
    return updated


@router.delete(
    "/{notification_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete notification",
    operation_id="delete_notification",
)
def delete_notification(request: Request, notification_id: str = Path(..., description="Notification id.")) -> None:
    """Delete a notification."""
    if not get_state(request.app).notifications.delete(notification_id):
        raise HTTPException(status_code=404, detail="notification not found")
    return None
