from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from franchisecore.apps.api.deps import Principal, get_franchise_service, get_principal
from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, collection_response, success_response
from franchisecore.domain.types import TimeWindow
from franchisecore.services.franchise import FranchiseService


router = APIRouter(tags=["aggregations"], responses=DEFAULT_ERROR_RESPONSES)


class TimePeriod(BaseModel):
    start: datetime
    end: datetime

    model_config = {"extra": "forbid"}


class AggregationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    location_ids: list[str] = Field(min_length=1, max_length=1000)
    metrics: list[str] = Field(min_length=1, max_length=50)
    time_period: TimePeriod
    benchmarks: dict[str, float] | None = None

    model_config = {"extra": "forbid"}


class MetricRecordRequest(BaseModel):
    location_id: str = Field(min_length=1, max_length=64)
    metric: str = Field(min_length=1, max_length=64)
    value: float
    recorded_at: datetime | None = None

    model_config = {"extra": "forbid"}


class LocationBreakdownResponse(BaseModel):
    location_id: str
    location_name: str
    value: float
    percentage: float


class MetricAggregationResponse(BaseModel):
    total: float
    average: float
    by_location: list[LocationBreakdownResponse]


class TimePeriodResponse(BaseModel):
    start: str
    end: str


class AggregationResponse(BaseModel):
    aggregation_id: str
    name: str
    description: str | None
    location_ids: list[str]
    metrics: list[str]
    time_period: TimePeriodResponse
    aggregated_data: dict[str, MetricAggregationResponse]
    insights: list[str]
    scanned_partitions: list[str]
    created_by: str
    created_at: str


class AggregationListResponse(BaseModel):
    items: list[AggregationResponse]


class MetricRecordResponse(BaseModel):
    id: str
    location_id: str
    metric: str
    value: float
    recorded_at: str


@router.post(
    "/aggregations",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[AggregationResponse],
)
async def create_aggregation(
    request: Request,
    payload: AggregationCreateRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    aggregation = await service.create_cross_location_aggregation(
        name=payload.name,
        description=payload.description,
        location_ids=payload.location_ids,
        metrics=payload.metrics,
        time_window=TimeWindow(payload.time_period.start, payload.time_period.end),
        user_id=principal.subject_id,
        benchmarks=payload.benchmarks,
    )
    return success_response(request=request, data=aggregation.to_dict())


@router.get("/aggregations", response_model=SuccessEnvelope[AggregationListResponse])
async def list_aggregations(
    request: Request,
    mine: bool = Query(default=True),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    jobs = await service.list_aggregations(principal.subject_id, include_all=not mine)
    return collection_response(request=request, key="items", items=[job.to_dict() for job in jobs])


@router.post(
    "/metrics/records",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[MetricRecordResponse],
)
async def record_metric(
    request: Request,
    payload: MetricRecordRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    stored: dict[str, Any] = await service.record_metric(
        user_id=principal.subject_id,
        location_id=payload.location_id,
        metric=payload.metric,
        value=payload.value,
        recorded_at=payload.recorded_at,
    )
    return success_response(request=request, data=jsonable_encoder(stored))
