"""Business-logic layer for the alerting engine.

- thresholds.py (parameter registry + pure evaluator)
- instance_tracker.py (same-day occurrence gate)
- alerts_repository.py / notifications_repository.py (persistent stores)
- notification_projector.py (alert -> notification, idempotent)
- alert_engine.py (evaluation, dedup and alert creation)
- retention.py (optional background purge loop)
"""

# Import side-effects are intentionally avoided here; modules are imported by routers/services as needed.
