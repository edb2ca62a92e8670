from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict

from src.api.db.base import StorageError
from src.api.state import AppState

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking store calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


# PUBLIC_INTERFACE
def purge_expired(state: AppState) -> Dict[str, int]:
    """Apply the configured retention to both stores. Failures are logged and counted, never raised."""
    cfg = state.config
    removed: Dict[str, int] = {}
    for repo, days in (
        (state.alerts, cfg.alert_retention_days),
        (state.notifications, cfg.notification_retention_days),
    ):
        try:
            removed[repo.kind] = repo.purge(days)
        except StorageError as exc:
            logger.exception("Retention purge of %s failed", repo.kind)
            state.metrics.storage_failure(exc.store or repo.kind, exc.operation or "purge")
            removed[repo.kind] = 0
    return removed


# PUBLIC_INTERFACE
async def retention_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that periodically purges alerts and notifications past their retention.

    Only started when RETENTION_PURGE_INTERVAL_SEC > 0; purges are otherwise on-demand.
    """
    interval = int(state.config.retention_purge_interval_sec)
    if interval <= 0:
        logger.info("Retention loop disabled (RETENTION_PURGE_INTERVAL_SEC=0)")
        return

    logger.info(
        "Retention loop started (interval=%ss, alerts=%sd, notifications=%sd)",
        interval,
        state.config.alert_retention_days,
        state.config.notification_retention_days,
    )

    while not shutdown_event.is_set():
        tick_started = datetime.now(timezone.utc)
        try:
            removed = await _run_in_thread(purge_expired, state)
            if any(removed.values()):
                logger.info("Retention purge removed %s", removed)
        except Exception:
            logger.exception("Retention tick failed")

        elapsed = (datetime.now(timezone.utc) - tick_started).total_seconds()
        sleep_for = max(0.1, interval - elapsed)
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Retention loop stopped")
