from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.config import BackendConfig, load_config
from src.api.db.base import StorageError, StorageTimeoutError
from src.api.routers import alerts, health, health_checks, notifications
from src.api.schemas.common import ErrorResponse
from src.api.services.retention import retention_loop
from src.api.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health, storage diagnostics and metrics."},
    {"name": "Alerts", "description": "Alert feed, read-state, retention and statistics."},
    {"name": "Notifications", "description": "Notification feed projected from alerts, read-state and retention."},
    {"name": "Evaluation", "description": "Threshold evaluation of driver health snapshots and detector events."},
]

logger = logging.getLogger(__name__)


def _env_frontend_url() -> str | None:
    return os.getenv("FRONTEND_URL")


def _env_cors_extra_origins() -> List[str]:
    # Comma-separated list for preview deployments, etc.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    return [p.strip() for p in raw.split(",") if p.strip()]


def _allowed_origins() -> List[str]:
    origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]
    frontend_url = _env_frontend_url()
    if frontend_url:
        origins.append(frontend_url)
    origins.extend(_env_cors_extra_origins())
    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    body = ErrorResponse(
        detail="storage unavailable",
        code="storage_timeout" if isinstance(exc, StorageTimeoutError) else "storage_error",
        meta={"store": exc.store, "operation": exc.operation},
    )
    return JSONResponse(status_code=503, content=body.model_dump())


# PUBLIC_INTERFACE
def create_app(config: Optional[BackendConfig] = None) -> FastAPI:
    """Build the FastAPI app with its own alerting state (stores, tracker, engine)."""
    config = config or load_config()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))

    app = FastAPI(
        title="Fleet Health Alerting API",
        description=(
            "Backend API for the fleet health-monitoring dashboard. Evaluates driver health snapshots "
            "against parameter thresholds, persists deduplicated alerts and projects them into notifications."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )

    init_state(app, config)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: verify Mongo (when configured), ensure indexes, start the optional retention loop."""
        state = get_state(app)

        if state.mongo is not None:
            # Connect + verify early so a misconfigured Mongo doesn't surface as lost alerts later.
            state.mongo.connect_app()
            if not state.mongo.ping():
                raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")
            state.mongo.init_indexes()

        if state.config.retention_purge_interval_sec > 0:
            app.state._retention_shutdown = asyncio.Event()
            state.retention_task = asyncio.create_task(retention_loop(state, app.state._retention_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the retention loop and release storage handles."""
        state = get_state(app)

        retention_shutdown = getattr(app.state, "_retention_shutdown", None)
        if retention_shutdown is not None:
            retention_shutdown.set()
        retention_task = state.retention_task
        if retention_task is not None:
            try:
                await asyncio.wait_for(retention_task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping retention task")

        state.close()

    app.add_exception_handler(StorageError, _storage_error_handler)

    # CORS: allow local frontend by default, plus explicit frontend URL and optional extra origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(alerts.router)
    app.include_router(notifications.router)
    app.include_router(health_checks.router)
    return app


app = create_app()
