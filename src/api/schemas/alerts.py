from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.api.db.base import SCHEMA_VERSION


class AlertType(str, Enum):
    """Source/category of an alert."""

    HEALTH = "HEALTH"
    ATTENDANCE = "ATTENDANCE"
    ALCOHOL_DETECTION = "ALCOHOL_DETECTION"
    OBJECT_DETECTION = "OBJECT_DETECTION"
    SAFETY = "SAFETY"
    SYSTEM = "SYSTEM"


class AlertSeverity(str, Enum):
    """Severity levels for alerts."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class HealthAlertMetadata(_Model):
    """Context recorded for a threshold-violation (HEALTH) alert."""

    kind: Literal["health"] = "health"
    driver_id: str = Field(..., alias="driverId")
    driver_name: str = Field(..., alias="driverName")
    parameter: str = Field(..., description="Display name of the monitored parameter.")
    value: Union[bool, float] = Field(..., description="Observed value that violated the threshold.")
    threshold: str = Field(..., description="Threshold registry key; also the dedup key.")
    unit: str = ""
    send_notification: bool = Field(True, alias="sendNotification")

    def driver(self) -> Optional[str]:
        return self.driver_id

    def wants_notification(self) -> bool:
        return self.send_notification


class DetectionAlertMetadata(_Model):
    """Context recorded for alcohol/drowsiness detector alerts."""

    kind: Literal["detection"] = "detection"
    driver_id: str = Field(..., alias="driverId")
    driver_name: str = Field(..., alias="driverName")
    detector: Literal["alcohol", "drowsiness"]
    detection_data: Dict[str, Any] = Field(default_factory=dict, alias="detectionData")
    send_notification: bool = Field(True, alias="sendNotification")

    def driver(self) -> Optional[str]:
        return self.driver_id

    def wants_notification(self) -> bool:
        return self.send_notification


class OpaqueMetadata(_Model):
    """Free-form metadata supplied by API callers."""

    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = Field(default_factory=dict)

    def driver(self) -> Optional[str]:
        v = self.data.get("driverId")
        return v if isinstance(v, str) else None

    def wants_notification(self) -> bool:
        return self.data.get("sendNotification") is not False


AlertMetadata = Annotated[
    Union[HealthAlertMetadata, DetectionAlertMetadata, OpaqueMetadata],
    Field(discriminator="kind"),
]


def coerce_metadata(v: Any) -> Any:
    """Wrap untagged dicts (and None) into the opaque variant; tagged payloads pass through."""
    if v is None:
        return {"kind": "opaque", "data": {}}
    if isinstance(v, dict) and "kind" not in v:
        return {"kind": "opaque", "data": v}
    return v


class AlertCreate(_Model):
    """Request model for creating an alert."""

    title: str = Field(..., min_length=1, description="Short alert title.")
    message: str = Field(..., min_length=1, description="Human-readable alert message.")
    type: AlertType = Field(..., description="Alert category.")
    severity: AlertSeverity = Field(..., description="Alert severity.")
    is_read: bool = Field(False, alias="isRead")
    target_role: Optional[str] = Field(default=None, alias="targetRole", description="Role this alert targets.")
    organization_id: Optional[str] = Field(
        default=None, alias="organizationId", description="Owning organization; defaults to the configured org."
    )
    metadata: AlertMetadata = Field(default_factory=OpaqueMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, v: Any) -> Any:
        return coerce_metadata(v)


class AlertUpdate(_Model):
    """Partial update; only read-state and metadata are mutable."""

    is_read: Optional[bool] = Field(default=None, alias="isRead")
    metadata: Optional[AlertMetadata] = Field(default=None)

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_optional(cls, v: Any) -> Any:
        return None if v is None else coerce_metadata(v)


class AlertOut(_Model):
    """Response/storage model for an alert."""

    id: str = Field(..., description="Alert id.")
    title: str
    message: str
    type: AlertType
    severity: AlertSeverity
    is_read: bool = Field(False, alias="isRead")
    target_role: Optional[str] = Field(default=None, alias="targetRole")
    organization_id: str = Field(..., alias="organizationId")
    metadata: AlertMetadata = Field(default_factory=OpaqueMetadata)
    created_at: datetime = Field(..., alias="createdAt", description="UTC creation timestamp.")
    updated_at: datetime = Field(..., alias="updatedAt", description="UTC timestamp of the last mutation.")
    schema_version: int = Field(SCHEMA_VERSION, alias="schemaVersion")

    @field_validator("metadata", mode="before")
    @classmethod
    def _coerce_metadata(cls, v: Any) -> Any:
        return coerce_metadata(v)


class AlertListResponse(BaseModel):
    """Envelope for listing alerts."""

    items: List[AlertOut] = Field(..., description="Page of alerts, newest first.")
    total: int = Field(..., ge=0, description="Total matching alerts before pagination.")


class AlertsQuery(_Model):
    """Filter/pagination model for listing alerts (used by router query params)."""

    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    type: Optional[AlertType] = Field(default=None)
    severity: Optional[AlertSeverity] = Field(default=None)
    is_read: Optional[bool] = Field(default=None, alias="isRead")
    created_after: Optional[datetime] = Field(default=None, alias="createdAfter")
    limit: int = Field(50, ge=1, le=500, description="Max number of alerts to return.")
    offset: int = Field(0, ge=0, le=100000, description="Offset for pagination (simple skip).")


class AlertStats(BaseModel):
    """Per-organization alert counters for dashboards."""

    total: int
    unread: int
    critical: int
    by_type: Dict[str, int] = Field(default_factory=dict, alias="byType")
    by_severity: Dict[str, int] = Field(default_factory=dict, alias="bySeverity")

    model_config = ConfigDict(populate_by_name=True)
