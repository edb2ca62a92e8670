from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request, status

from src.api.schemas.alerts import AlertOut
from src.api.schemas.health_checks import DetectionEvent, EvaluationReport, MetricSnapshot
from src.api.state import get_state

router = APIRouter(tags=["Evaluation"])


@router.post(
    "/api/health-checks/evaluate",
    response_model=EvaluationReport,
    summary="Evaluate a metric snapshot",
    description=(
        "Evaluate one driver's health readings against the threshold registry. Violations that pass the "
        "same-day occurrence gate and the dedup window become alerts (and notifications). Never fails "
        "because alert persistence failed; see per-metric outcomes instead."
    ),
    operation_id="evaluate_health_snapshot",
)
def evaluate_snapshot(request: Request, snapshot: MetricSnapshot) -> EvaluationReport:
    """Run the alerting engine over a metric snapshot."""
    return get_state(request.app).engine.check_and_create_alerts(snapshot)


@router.post(
    "/api/detections/alcohol",
    response_model=Optional[AlertOut],
    status_code=status.HTTP_201_CREATED,
    summary="Report alcohol detection",
    description="Create a CRITICAL ALCOHOL_DETECTION alert. Not deduplicated; returns null if persistence failed.",
    operation_id="report_alcohol_detection",
)
def report_alcohol(request: Request, event: DetectionEvent) -> Optional[AlertOut]:
    """Record an alcohol detection."""
    return get_state(request.app).engine.create_alcohol_alert(
        event.driver_id, event.driver_name, event.organization_id, event.detection_data
    )


@router.post(
    "/api/detections/drowsiness",
    response_model=Optional[AlertOut],
    status_code=status.HTTP_201_CREATED,
    summary="Report drowsiness detection",
    description="Create a CRITICAL SAFETY alert for drowsiness. Not deduplicated; returns null if persistence failed.",
    operation_id="report_drowsiness_detection",
)
def report_drowsiness(request: Request, event: DetectionEvent) -> Optional[AlertOut]:
    """Record a drowsiness detection."""
    return get_state(request.app).engine.create_drowsiness_alert(
        event.driver_id, event.driver_name, event.organization_id, event.detection_data
    )
