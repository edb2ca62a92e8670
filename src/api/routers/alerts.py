from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Path, Query, Request, status

from src.api.schemas.alerts import (
    AlertCreate,
    AlertListResponse,
    AlertOut,
    AlertSeverity,
    AlertsQuery,
    AlertStats,
    AlertType,
    AlertUpdate,
)
from src.api.schemas.common import CountResponse, ErrorResponse
from src.api.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


def _org(request: Request, organization_id: Optional[str]) -> str:
    return organization_id or get_state(request.app).config.default_organization_id


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List alerts",
    description=(
        "List alerts for an organization with filters: type, severity, isRead, createdAfter. "
        "Results sorted by createdAt desc; total counts all matches before pagination."
    ),
    operation_id="list_alerts",
)
def list_alerts(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
    type_filter: Optional[AlertType] = Query(default=None, alias="type"),
    severity: Optional[AlertSeverity] = Query(default=None),
    is_read: Optional[bool] = Query(default=None, alias="isRead"),
    created_after: Optional[datetime] = Query(default=None, alias="createdAfter", description="ISO datetime (inclusive)"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
    page: Optional[int] = Query(default=None, ge=1, description="1-based page; overrides offset when given."),
) -> AlertListResponse:
    """List alerts with filters and pagination."""
    filters = AlertsQuery(
        organizationId=_org(request, organization_id),
        type=type_filter,
        severity=severity,
        isRead=is_read,
        createdAfter=created_after,
        limit=limit,
        offset=(page - 1) * limit if page else offset,
    )
    items, total = get_state(request.app).alerts.query(filters)
    return AlertListResponse(items=items, total=total)


@router.post(
    "",
    response_model=AlertOut,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Create alert",
    description="Create an alert directly (bypasses thresholds and dedup).",
    operation_id="create_alert",
)
def create_alert(request: Request, payload: AlertCreate) -> AlertOut:
    """Create an alert."""
    if not payload.title.strip() or not payload.message.strip():
        raise HTTPException(status_code=400, detail="title and message must not be empty")
    payload = payload.model_copy(update={"organization_id": _org(request, payload.organization_id)})
    return get_state(request.app).alerts.create(payload)


@router.get(
    "/stats",
    response_model=AlertStats,
    summary="Alert statistics",
    description="Counts of total/unread/critical alerts and breakdowns by type and severity.",
    operation_id="alert_stats",
)
def alert_stats(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
) -> AlertStats:
    """Alert statistics for one organization."""
    return get_state(request.app).alerts.stats(_org(request, organization_id))


@router.post(
    "/mark-all-read",
    response_model=CountResponse,
    summary="Mark all alerts read",
    operation_id="mark_all_alerts_read",
)
def mark_all_read(
    request: Request,
    organization_id: Optional[str] = Query(default=None, alias="organizationId"),
) -> CountResponse:
    """Mark every unread alert of an organization as read."""
    return CountResponse(count=get_state(request.app).alerts.mark_all_read(_org(request, organization_id)))


@router.post(
    "/purge",
    response_model=CountResponse,
    summary="Purge old alerts",
    description="Delete alerts older than daysToKeep days (defaults to ALERT_RETENTION_DAYS).",
    operation_id="purge_alerts",
)
def purge_alerts(
    request: Request,
    days_to_keep: Optional[int] = Query(default=None, alias="daysToKeep", ge=0, le=3650),
) -> CountResponse:
    """Apply retention to alerts."""
    state = get_state(request.app)
    days = state.config.alert_retention_days if days_to_keep is None else days_to_keep
    return CountResponse(count=state.alerts.purge(days))


@router.get(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get alert",
    operation_id="get_alert",
)
def get_alert(request: Request, alert_id: str = Path(..., description="Alert id.")) -> AlertOut:
    """Get an alert by id."""
    alert = get_state(request.app).alerts.get(alert_id)
    if not alert:
        raise HTTPException(status_code=404, detail="alert not found")
    return alert


@router.patch(
    "/{alert_id}",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Update alert",
    description="Patch an alert's mutable fields (isRead, metadata).",
    operation_id="patch_alert",
)
def patch_alert(
    request: Request,
    payload: AlertUpdate,
    alert_id: str = Path(..., description="Alert id."),
) -> AlertOut:
    """Patch an alert."""
    updated = get_state(request.app).alerts.update(alert_id, payload)
    if not updated:
        raise HTTPException(status_code=404, detail="alert not found")
    return updated


@router.patch(
    "/{alert_id}/read",
    response_model=AlertOut,
    responses={404: {"model": ErrorResponse}},
    summary="Mark alert read",
    operation_id="mark_alert_read",
)
def mark_alert_read(request: Request, alert_id: str = Path(..., description="Alert id.")) -> AlertOut:
    """Mark one alert as read."""
    updated = get_state(request.app).alerts.mark_read(alert_id)
    if not updated:
        raise HTTPException(status_code=404, detail="alert not found")
    return updated


@router.delete(
    "/{alert_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete alert",
    operation_id="delete_alert",
)
def delete_alert(request: Request, alert_id: str = Path(..., description="Alert id.")) -> None:
    """Delete an alert."""
    if not get_state(request.app).alerts.delete(alert_id):
        raise HTTPException(status_code=404, detail="alert not found")
    return None
