from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, generate_latest

logger = logging.getLogger(__name__)


class AlertingMetrics:
    """Prometheus counters for the alerting engine, held in their own registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.alerts_created = Counter(
            "fleetmon_alerts_created_total",
            "Alerts persisted by the alerting engine",
            ["type", "severity"],
            registry=self.registry,
        )
        self.alerts_suppressed = Counter(
            "fleetmon_alerts_suppressed_total",
            "Threshold violations that did not produce an alert",
            ["reason"],
            registry=self.registry,
        )
        self.notifications_projected = Counter(
            "fleetmon_notifications_projected_total",
            "Notifications derived from alerts",
            registry=self.registry,
        )
        self.storage_failures = Counter(
            "fleetmon_storage_failures_total",
            "Storage failures swallowed by the alerting engine (each one is a lost record)",
            ["store", "operation"],
            registry=self.registry,
        )

    def storage_failure(self, store: str, operation: str) -> None:
        self.storage_failures.labels(store=store or "unknown", operation=operation or "unknown").inc()

    def value(self, name: str, **labels: str) -> float:
        """Current value of a sample (0.0 if it was never incremented)."""
        v = self.registry.get_sample_value(name, labels or None)
        return float(v) if v is not None else 0.0

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
