from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.api.db.base import SCHEMA_VERSION
from src.api.schemas.alerts import AlertMetadata, OpaqueMetadata, coerce_metadata


class NotificationType(str, Enum):
    """Display style of a notification in the UI."""

    info = "info"
    warning = "warning"
    error = "error"
    success = "success"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class NotificationCreate(_Model):
    """Request model for creating a notification directly (not projected from an alert)."""

    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: NotificationType = Field(..., description="info|warning|error|success")
    read: bool = Field(False)
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    action_url: Optional[str] = Field(default=None, alias="actionUrl")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    alert_id: Optional[str] = Field(default=None, alias="alertId", description="Back-link to the source alert.")
    metadata: AlertMetadata = Field(default_factory=OpaqueMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, v: Any) -> Any:
        return coerce_metadata(v)


class NotificationUpdate(_Model):
    """Partial update; read-state and metadata are mutable."""

    read: Optional[bool] = Field(default=None)
    metadata: Optional[AlertMetadata] = Field(default=None)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_optional(cls, v: Any) -> Any:
        return None if v is None else coerce_metadata(v)


class NotificationOut(_Model):
    """Response/storage model for a notification."""

    id: str
    title: str
    message: str
    type: NotificationType
    read: bool = False
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    action_url: Optional[str] = Field(default=None, alias="actionUrl")
    organization_id: str = Field(..., alias="organizationId")
    alert_id: Optional[str] = Field(default=None, alias="alertId")
    metadata: AlertMetadata = Field(default_factory=OpaqueMetadata)
    timestamp: datetime = Field(..., description="UTC creation timestamp.")
    schema_version: int = Field(SCHEMA_VERSION, alias="schemaVersion")

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, v: Any) -> Any:
        return coerce_metadata(v)


class NotificationListResponse(BaseModel):
    """Envelope for listing notifications."""

    items: List[NotificationOut] = Field(..., description="Page of notifications, newest first.")
    total: int = Field(..., ge=0, description="Total matching notifications before pagination.")


class NotificationsQuery(_Model):
    """Filter/pagination model for listing notifications."""

    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    read: Optional[bool] = Field(default=None)
    driver_id: Optional[str] = Field(default=None, alias="driverId")
    created_after: Optional[datetime] = Field(default=None, alias="createdAfter")
    limit: int = Field(50, ge=1, le=500)
    offset: int = Field(0, ge=0, le=100000)


class UnreadCountResponse(BaseModel):
    """Unread notifications for one organization."""

    model_config = ConfigDict(populate_by_name=True)

    organization_id: str = Field(..., alias="organizationId")
    unread: int = Field(..., ge=0)


class SyncResponse(BaseModel):
    """Result of projecting notifications from recent alerts."""

    scanned: int = Field(..., ge=0, description="Alerts considered.")
    created: int = Field(..., ge=0, description="Notifications newly created.")
