"""Per-driver, per-parameter same-day violation counter.

Counters live in process memory only: a restart resets every count, so the
occurrence gate is best-effort and can fire late (or early) across a restart.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from src.api.schemas.common import utc_now

logger = logging.getLogger(__name__)


def _local_date(ts: datetime) -> date:
    return ts.astimezone().date() if ts.tzinfo is not None else ts.date()


class InstanceTracker:
    """
    Counts threshold violations per (driver, parameter) for the current local calendar day.

    The first call on a new day drops every earlier-day entry and every key left empty,
    which gives an implicit reset at local midnight without a timer and keeps the map
    bounded by the keys seen today.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now, tz_date: Optional[Callable[[datetime], date]] = None):
        self._clock = clock
        self._to_date = tz_date or _local_date
        self._instances: Dict[Tuple[str, str], List[datetime]] = {}
        self._swept_on: Optional[date] = None
        self._lock = Lock()

    def _today_only(self, stamps: List[datetime], today: date) -> List[datetime]:
        return [ts for ts in stamps if self._to_date(ts) == today]

    def _sweep(self, today: date) -> None:
        # Caller holds _lock.
        if self._swept_on == today:
            return
        for key in list(self._instances):
            stamps = self._today_only(self._instances[key], today)
            if stamps:
                self._instances[key] = stamps
            else:
                del self._instances[key]
        self._swept_on = today

    # PUBLIC_INTERFACE
    def record(self, driver_id: str, parameter: str) -> int:
        """Record one violation now and return today's violation count for the key."""
        now = self._clock()
        today = self._to_date(now)
        key = (driver_id, parameter)
        with self._lock:
            self._sweep(today)
            stamps = self._today_only(self._instances.get(key, []), today)
            stamps.append(now)
            self._instances[key] = stamps
            return len(stamps)

    # PUBLIC_INTERFACE
    def count(self, driver_id: str, parameter: str) -> int:
        """Today's violation count for the key, without recording a new one."""
        today = self._to_date(self._clock())
        with self._lock:
            self._sweep(today)
            return len(self._today_only(self._instances.get((driver_id, parameter), []), today))

    def reset(self) -> None:
        with self._lock:
            self._instances.clear()
            self._swept_on = None
        logger.info("Instance tracker reset")
