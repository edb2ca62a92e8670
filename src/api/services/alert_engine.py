from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Mapping, Optional

from src.api.db.base import DedupLedger, StorageError
from src.api.schemas.alerts import (
    AlertCreate,
    AlertOut,
    AlertSeverity,
    AlertType,
    DetectionAlertMetadata,
    HealthAlertMetadata,
)
from src.api.schemas.health_checks import EvaluationReport, MetricSnapshot, ParameterEvaluation
from src.api.services.alerts_repository import AlertsRepository
from src.api.services.instance_tracker import InstanceTracker
from src.api.services.metrics import AlertingMetrics
from src.api.services.notification_projector import NotificationProjector
from src.api.services.thresholds import (
    HEALTH_THRESHOLDS,
    MetricValue,
    ThresholdConfig,
    UnknownParameterError,
    evaluate,
    format_value,
    resolve_threshold,
)

logger = logging.getLogger(__name__)


class AlertingEngine:
    """
    Threshold evaluation -> occurrence gate -> dedup -> alert persistence -> notification.

    Nothing here raises into the caller: health-check processing must not fail because
    alerting did. Storage failures are logged and counted, and the alert is lost.
    """

    def __init__(
        self,
        alerts: AlertsRepository,
        projector: NotificationProjector,
        tracker: InstanceTracker,
        *,
        metrics: Optional[AlertingMetrics] = None,
        thresholds: Mapping[str, ThresholdConfig] = HEALTH_THRESHOLDS,
        dedup_window_min: int = 60,
        default_organization_id: str = "org_default",
        dedup_ledger: Optional[DedupLedger] = None,
    ):
        self._alerts = alerts
        self._projector = projector
        self._tracker = tracker
        self._metrics = metrics or AlertingMetrics()
        self._thresholds = thresholds
        self._dedup_window = timedelta(minutes=max(0, int(dedup_window_min)))
        self._default_org = default_organization_id
        # Shared claim registry so dedup also holds across workers (None: this process only).
        self._ledger = dedup_ledger
        # Dedup lookup + insert must not interleave between requests.
        self._create_lock = Lock()

    def _org(self, organization_id: Optional[str]) -> str:
        return organization_id or self._default_org

    def _persist(self, payload: AlertCreate) -> Optional[AlertOut]:
        try:
            alert = self._alerts.create(payload)
        except StorageError as exc:
            logger.exception("Persisting %s alert %r failed", payload.type, payload.title)
            self._metrics.storage_failure(exc.store or "alerts", exc.operation or "insert")
            return None
        self._metrics.alerts_created.labels(type=alert.type, severity=alert.severity).inc()
        return alert

    def _claim(self, key: str, now: datetime, until: datetime) -> str:
        if self._ledger is None:
            return "claimed"
        try:
            if self._ledger.claim(key, now, until):
                return "claimed"
        except StorageError as exc:
            logger.exception("Dedup claim failed for %s", key)
            self._metrics.storage_failure(exc.store or "alert_dedup", exc.operation or "claim")
            return "failed"
        logger.debug("Suppressed duplicate alert for %s (claimed by another worker)", key)
        self._metrics.alerts_suppressed.labels(reason="duplicate").inc()
        return "suppressed"

    def _release(self, key: str, until: datetime) -> None:
        if self._ledger is None:
            return
        try:
            self._ledger.release(key, until)
        except StorageError as exc:
            logger.exception("Releasing dedup claim %s failed", key)
            self._metrics.storage_failure(exc.store or "alert_dedup", exc.operation or "release")

    # PUBLIC_INTERFACE
    def check_and_create_alerts(self, snapshot: MetricSnapshot) -> EvaluationReport:
        """Evaluate every metric in the snapshot and create alerts for gated, non-duplicate violations."""
        org = self._org(snapshot.organization_id)
        report = EvaluationReport(driverId=snapshot.driver_id, organizationId=org)

        for name, value in snapshot.metrics.items():
            try:
                config = resolve_threshold(name, self._thresholds)
            except UnknownParameterError as exc:
                logger.warning("Skipping metric for driverId=%s: %s", snapshot.driver_id, exc)
                self._metrics.alerts_suppressed.labels(reason="unknown_parameter").inc()
                report.results.append(ParameterEvaluation(parameter=name, value=value, outcome="unknown_parameter"))
                continue

            result = evaluate(config, value)
            entry = ParameterEvaluation(
                parameter=name,
                value=value,
                isAlert=result.is_alert,
                isCritical=result.is_critical,
                outcome="normal",
            )
            report.results.append(entry)
            if not result.is_alert:
                continue

            count = self._tracker.record(snapshot.driver_id, config.key)
            entry.instance_count = count
            if count < config.flag_instances:
                entry.outcome = "pending"
                self._metrics.alerts_suppressed.labels(reason="below_instance_gate").inc()
                continue

            outcome, alert = self._create_health_alert(
                driver_id=snapshot.driver_id,
                driver_name=snapshot.driver_name,
                config=config,
                value=value,
                is_critical=result.is_critical,
                organization_id=org,
                send_notification=config.send_notification,
            )
            entry.outcome = outcome
            entry.alert_id = alert.id if alert else None

        return report

    # PUBLIC_INTERFACE
    def create_health_alert(
        self,
        driver_id: str,
        driver_name: str,
        parameter_key: str,
        value: MetricValue,
        is_critical: bool,
        organization_id: Optional[str] = None,
        send_notification: bool = True,
    ) -> Optional[AlertOut]:
        """
        Create a HEALTH alert unless one for the same organization and threshold key was
        created inside the dedup window. Returns the alert, or None when suppressed/failed.
        """
        try:
            config = resolve_threshold(parameter_key, self._thresholds)
        except UnknownParameterError as exc:
            logger.warning("Cannot create health alert for driverId=%s: %s", driver_id, exc)
            return None
        _, alert = self._create_health_alert(
            driver_id=driver_id,
            driver_name=driver_name,
            config=config,
            value=value,
            is_critical=is_critical,
            organization_id=self._org(organization_id),
            send_notification=send_notification,
        )
        return alert

    def _create_health_alert(
        self,
        *,
        driver_id: str,
        driver_name: str,
        config: ThresholdConfig,
        value: MetricValue,
        is_critical: bool,
        organization_id: str,
        send_notification: bool,
    ):
        with self._create_lock:
            now = self._alerts.now()
            since = now - self._dedup_window
            try:
                existing = self._alerts.find_recent(organization_id, AlertType.HEALTH, config.key, since)
            except StorageError as exc:
                logger.exception("Dedup lookup failed for %s (organizationId=%s)", config.key, organization_id)
                self._metrics.storage_failure(exc.store or "alerts", exc.operation or "find")
                return "failed", None
            if existing is not None:
                logger.debug(
                    "Suppressed duplicate %s alert for organizationId=%s (existing alertId=%s)",
                    config.key,
                    organization_id,
                    existing.id,
                )
                self._metrics.alerts_suppressed.labels(reason="duplicate").inc()
                return "suppressed", None

            claim_key = f"{organization_id}:{AlertType.HEALTH.value}:{config.key}"
            until = now + self._dedup_window
            claimed = self._claim(claim_key, now, until)
            if claimed != "claimed":
                return claimed, None

            alert = self._persist(
                AlertCreate(
                    title=f"Critical Health Alert: {config.parameter}",
                    message=config.render_message(value, driver_name),
                    type=AlertType.HEALTH,
                    severity=AlertSeverity.CRITICAL if is_critical else AlertSeverity.WARNING,
                    organizationId=organization_id,
                    metadata=HealthAlertMetadata(
                        driverId=driver_id,
                        driverName=driver_name,
                        parameter=config.parameter,
                        value=value,
                        threshold=config.key,
                        unit=config.unit,
                        sendNotification=send_notification,
                    ).model_dump(by_alias=True),
                )
            )
            if alert is None:
                self._release(claim_key, until)
                return "failed", None

        if is_critical:
            logger.info(
                "Critical alert created for %s: %s = %s%s",
                driver_name,
                config.parameter,
                format_value(value),
                config.unit,
            )
        if send_notification:
            self._projector.try_project_from_alert(alert, organization_id)
        return "created", alert

    def _create_detection_alert(
        self,
        *,
        detector: str,
        alert_type: AlertType,
        title: str,
        message: str,
        driver_id: str,
        driver_name: str,
        organization_id: Optional[str],
        detection_data: Optional[Dict[str, Any]],
    ) -> Optional[AlertOut]:
        org = self._org(organization_id)
        alert = self._persist(
            AlertCreate(
                title=title,
                message=message,
                type=alert_type,
                severity=AlertSeverity.CRITICAL,
                organizationId=org,
                metadata=DetectionAlertMetadata(
                    driverId=driver_id,
                    driverName=driver_name,
                    detector=detector,
                    detectionData=dict(detection_data or {}),
                    sendNotification=True,
                ).model_dump(by_alias=True),
            )
        )
        if alert is not None:
            self._projector.try_project_from_alert(alert, org)
        return alert

    # PUBLIC_INTERFACE
    def create_alcohol_alert(
        self,
        driver_id: str,
        driver_name: str,
        organization_id: Optional[str] = None,
        detection_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AlertOut]:
        """Unconditionally create one CRITICAL ALCOHOL_DETECTION alert (no threshold, no dedup)."""
        return self._create_detection_alert(
            detector="alcohol",
            alert_type=AlertType.ALCOHOL_DETECTION,
            title="Alcohol Detection Alert",
            message=f"Alcohol detected for driver {driver_name}. Immediate action required.",
            driver_id=driver_id,
            driver_name=driver_name,
            organization_id=organization_id,
            detection_data=detection_data,
        )

    # PUBLIC_INTERFACE
    def create_drowsiness_alert(
        self,
        driver_id: str,
        driver_name: str,
        organization_id: Optional[str] = None,
        detection_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[AlertOut]:
        """Unconditionally create one CRITICAL SAFETY alert for drowsiness (no threshold, no dedup)."""
        return self._create_detection_alert(
            detector="drowsiness",
            alert_type=AlertType.SAFETY,
            title="Drowsiness Detection Alert",
            message=f"Drowsiness detected for driver {driver_name}. Safety check required.",
            driver_id=driver_id,
            driver_name=driver_name,
            organization_id=organization_id,
            detection_data=detection_data,
        )
