from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from src.api.config import BackendConfig
from src.api.db.file_store import JsonlFileBackend
from src.api.services.alert_engine import AlertingEngine
from src.api.services.alerts_repository import AlertsRepository
from src.api.services.instance_tracker import InstanceTracker
from src.api.services.metrics import AlertingMetrics
from src.api.services.notification_projector import NotificationProjector
from src.api.services.notifications_repository import NotificationsRepository


class FakeClock:
    """Deterministic clock; every call returns the current time, then steps it forward by `tick`."""

    def __init__(self, start: datetime, tick: timedelta = timedelta(seconds=1)):
        self.now = start
        self.tick = tick

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.tick
        return current

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def config(tmp_path: Path) -> BackendConfig:
    """File-backed config rooted in a per-test temp dir."""
    return BackendConfig(
        storage_backend="file",
        storage_data_dir=str(tmp_path / "data"),
        storage_lock_timeout_sec=5,
        storage_compact_after=500,
        mongo_uri=None,
        mongo_timeout_ms=3000,
        default_organization_id="org_test",
        alert_dedup_window_min=60,
        alert_retention_days=30,
        notification_retention_days=7,
        notification_sync_window_hours=24,
        retention_purge_interval_sec=0,
        log_level="INFO",
    )


@pytest.fixture
def metrics() -> AlertingMetrics:
    return AlertingMetrics()


@pytest.fixture
def alerts_repo(tmp_path: Path, clock: FakeClock) -> AlertsRepository:
    backend = JsonlFileBackend(tmp_path / "alerts.jsonl", "alerts", datetime_fields=("createdAt", "updatedAt"))
    return AlertsRepository(backend, clock=clock)


@pytest.fixture
def notifications_repo(tmp_path: Path, clock: FakeClock) -> NotificationsRepository:
    backend = JsonlFileBackend(tmp_path / "notifications.jsonl", "notifications", datetime_fields=("timestamp",))
    return NotificationsRepository(backend, clock=clock)


@pytest.fixture
def tracker(clock: FakeClock) -> InstanceTracker:
    # UTC calendar days keep the tests independent of the host time zone.
    return InstanceTracker(clock=clock, tz_date=lambda ts: ts.astimezone(timezone.utc).date())


@pytest.fixture
def projector(notifications_repo: NotificationsRepository, metrics: AlertingMetrics) -> NotificationProjector:
    return NotificationProjector(notifications_repo, metrics)


@pytest.fixture
def engine(
    alerts_repo: AlertsRepository,
    projector: NotificationProjector,
    tracker: InstanceTracker,
    metrics: AlertingMetrics,
) -> AlertingEngine:
    return AlertingEngine(
        alerts_repo,
        projector,
        tracker,
        metrics=metrics,
        dedup_window_min=60,
        default_organization_id="org_test",
    )


@pytest.fixture
def app(config: BackendConfig):
    """FastAPI app with its own file-backed state in a temp dir."""
    from src.api.main import create_app

    return create_app(config)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
