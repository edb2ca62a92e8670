from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import FastAPI

from src.api.config import BackendConfig
from src.api.db.base import RecordBackend
from src.api.db.file_store import JsonlFileBackend
from src.api.db.mongo import MongoBackend, MongoDedupLedger, MongoManager
from src.api.services.alert_engine import AlertingEngine
from src.api.services.alerts_repository import AlertsRepository
from src.api.services.instance_tracker import InstanceTracker
from src.api.services.metrics import AlertingMetrics
from src.api.services.notification_projector import NotificationProjector
from src.api.services.notifications_repository import NotificationsRepository

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Typed app.state container; owns every piece of engine state (no module-level singletons)."""

    config: BackendConfig
    alerts: AlertsRepository
    notifications: NotificationsRepository
    tracker: InstanceTracker
    projector: NotificationProjector
    engine: AlertingEngine
    metrics: AlertingMetrics
    mongo: Optional[MongoManager] = None
    retention_task: Optional[asyncio.Task] = None

    def close(self) -> None:
        self.alerts.backend.close()
        self.notifications.backend.close()
        if self.mongo is not None:
            self.mongo.close()


def _open_backends(config: BackendConfig) -> Tuple[RecordBackend, RecordBackend, Optional[MongoManager]]:
    if config.storage_backend == "mongo":
        assert config.mongo_uri is not None
        mongo = MongoManager(config.mongo_uri, timeout_ms=config.mongo_timeout_ms)
        cols = mongo.collections()
        return MongoBackend(cols.alerts, "alerts"), MongoBackend(cols.notifications, "notifications"), mongo

    alerts = JsonlFileBackend(
        os.path.join(config.storage_data_dir, "alerts.jsonl"),
        "alerts",
        datetime_fields=("createdAt", "updatedAt"),
        lock_timeout_sec=config.storage_lock_timeout_sec,
        compact_after=config.storage_compact_after,
    )
    notifications = JsonlFileBackend(
        os.path.join(config.storage_data_dir, "notifications.jsonl"),
        "notifications",
        datetime_fields=("timestamp",),
        lock_timeout_sec=config.storage_lock_timeout_sec,
        compact_after=config.storage_compact_after,
    )
    return alerts, notifications, None


# PUBLIC_INTERFACE
def build_state(config: BackendConfig, metrics: Optional[AlertingMetrics] = None) -> AppState:
    """Construct repositories, tracker, projector and engine for one application instance."""
    metrics = metrics or AlertingMetrics()
    alerts_backend, notifications_backend, mongo = _open_backends(config)

    alerts = AlertsRepository(alerts_backend)
    notifications = NotificationsRepository(notifications_backend)
    tracker = InstanceTracker()
    projector = NotificationProjector(notifications, metrics)
    # File stores are single-process; Mongo deployments share dedup claims across workers.
    ledger = MongoDedupLedger(mongo.collections().alert_dedup) if mongo is not None else None
    engine = AlertingEngine(
        alerts,
        projector,
        tracker,
        metrics=metrics,
        dedup_window_min=config.alert_dedup_window_min,
        default_organization_id=config.default_organization_id,
        dedup_ledger=ledger,
    )
    logger.info("Alerting state ready (backend=%s)", config.storage_backend)
    return AppState(
        config=config,
        alerts=alerts,
        notifications=notifications,
        tracker=tracker,
        projector=projector,
        engine=engine,
        metrics=metrics,
        mongo=mongo,
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> None:
    """Initialize app.state with the alerting state built from config."""
    app.state.state = build_state(config)


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
