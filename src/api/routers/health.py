from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from src.api.db.base import StorageError
from src.api.schemas.common import HealthResponse, utc_now
from src.api.state import get_state

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


class StorageDiagnosticsResponse(BaseModel):
    """Response model for storage diagnostics (no secrets)."""

    ok: bool = Field(..., description="Whether every store answered without error.")
    backend: str = Field(..., description="Configured storage backend (file|mongo).")
    mongo_uri_sanitized: Optional[str] = Field(default=None, description="Mongo URI with credentials masked.")
    stores: List[Dict[str, Any]] = Field(default_factory=list, description="Per-store diagnostics.")
    storage_failures: float = Field(0.0, description="Storage failures swallowed by the engine since startup.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment and the frontend.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/storage",
    response_model=StorageDiagnosticsResponse,
    summary="Storage diagnostics",
    description="Reports backend, file paths or masked Mongo URI, schema version and record counts per store.",
    operation_id="storage_diagnostics",
)
def storage_diagnostics(request: Request) -> StorageDiagnosticsResponse:
    """Describe both stores and report whether they are reachable."""
    state = get_state(request.app)
    ok = True
    stores: List[Dict[str, Any]] = []
    for repo in (state.alerts, state.notifications):
        try:
            stores.append(repo.describe())
        except StorageError as exc:
            logger.exception("Storage diagnostics failed for %s", repo.kind)
            ok = False
            stores.append({"kind": repo.kind, "error": str(exc)})

    failures = sum(
        m.value
        for metric in state.metrics.storage_failures.collect()
        for m in metric.samples
        if m.name.endswith("_total")
    )
    return StorageDiagnosticsResponse(
        ok=ok,
        backend=state.config.storage_backend,
        mongo_uri_sanitized=state.mongo.sanitized_uri if state.mongo is not None else None,
        stores=stores,
        storage_failures=failures,
        timestamp=utc_now().isoformat(),
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Alerting engine counters in Prometheus text exposition format.",
    operation_id="metrics",
    include_in_schema=False,
)
def metrics(request: Request) -> Response:
    """Expose the alerting metrics registry."""
    return Response(content=get_state(request.app).metrics.exposition(), media_type=CONTENT_TYPE_LATEST)
