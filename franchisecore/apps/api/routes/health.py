from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, success_response
from franchisecore.core.config import get_settings
from franchisecore.persistence.db import pool_stats
from franchisecore.services.telemetry import (
    counters_snapshot,
    fetch_latency_by_source,
    request_p95_latency,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class MetricsResponse(BaseModel):
    store_backend: str
    request_p95_ms: float | None
    fetch_latency: dict[str, dict[str, float | int]]
    counters: dict[str, int]
    db_pool: dict[str, int | None] | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok").model_dump())


@router.get("/ops/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def ops_metrics(request: Request, window_s: int = 300) -> dict:
    # In-process view over the last window; each instance reports its own samples.
    store_backend = get_settings().store_backend
    payload = MetricsResponse(
        store_backend=store_backend,
        request_p95_ms=request_p95_latency(window_s, path_prefix="/v1"),
        fetch_latency=fetch_latency_by_source(window_s),
        counters=counters_snapshot(),
        db_pool=pool_stats() if store_backend == "sql" else None,
    )
    return success_response(request=request, data=payload.model_dump())
