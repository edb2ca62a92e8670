from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.api.schemas.common import utc_now

EvaluationOutcome = Literal["normal", "pending", "created", "suppressed", "failed", "unknown_parameter"]


class MetricSnapshot(BaseModel):
    """One driver's health readings, supplied by the external health-data pipeline."""

    model_config = ConfigDict(populate_by_name=True)

    driver_id: str = Field(..., min_length=1, alias="driverId")
    driver_name: str = Field(..., min_length=1, alias="driverName")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    timestamp: datetime = Field(default_factory=utc_now)
    # bool first so JSON true/false stay booleans; numbers land on float.
    metrics: Dict[str, Union[bool, float]] = Field(default_factory=dict)


class ParameterEvaluation(BaseModel):
    """Outcome of evaluating one metric of a snapshot."""

    model_config = ConfigDict(populate_by_name=True)

    parameter: str = Field(..., description="Metric name as supplied in the snapshot.")
    value: Union[bool, float]
    is_alert: bool = Field(False, alias="isAlert")
    is_critical: bool = Field(False, alias="isCritical")
    instance_count: int = Field(0, ge=0, alias="instanceCount")
    outcome: EvaluationOutcome
    alert_id: Optional[str] = Field(default=None, alias="alertId")


class EvaluationReport(BaseModel):
    """Per-metric outcomes of one snapshot evaluation."""

    model_config = ConfigDict(populate_by_name=True)

    driver_id: str = Field(..., alias="driverId")
    organization_id: str = Field(..., alias="organizationId")
    results: List[ParameterEvaluation] = Field(default_factory=list)

    @property
    def alerts_created(self) -> int:
        return sum(1 for r in self.results if r.outcome == "created")


class DetectionEvent(BaseModel):
    """Alcohol/drowsiness detector hit for one driver."""

    model_config = ConfigDict(populate_by_name=True)

    driver_id: str = Field(..., min_length=1, alias="driverId")
    driver_name: str = Field(..., min_length=1, alias="driverName")
    organization_id: Optional[str] = Field(default=None, alias="organizationId")
    detection_data: Dict[str, Any] = Field(default_factory=dict, alias="detectionData")
