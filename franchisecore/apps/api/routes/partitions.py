from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from franchisecore.apps.api.deps import Principal, get_franchise_service, get_principal
from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, collection_response, success_response
from franchisecore.services.franchise import FranchiseService


router = APIRouter(prefix="/partitions", tags=["partitions"], responses=DEFAULT_ERROR_RESPONSES)


class RetentionPolicyModel(BaseModel):
    enabled: bool = False
    retention_days: int = Field(default=0, ge=0)
    archive_location: str | None = None

    model_config = {"extra": "forbid"}


class PartitionCreateRequest(BaseModel):
    table_name: str = Field(min_length=1, max_length=63)
    partition_type: Literal["location", "time", "region", "custom"]
    partition_key: str = Field(min_length=1, max_length=63)
    values: list[str] = Field(min_length=1)
    strategy: Literal["range", "hash", "list"]
    retention_policy: RetentionPolicyModel | None = None
    name: str | None = Field(default=None, max_length=63)

    model_config = {"extra": "forbid"}


class PartitionResponse(BaseModel):
    partition_id: str
    tenant_id: str
    name: str
    table_name: str
    partition_type: str
    partition_key: str
    partition_values: list[str]
    strategy: str
    retention_policy: RetentionPolicyModel | None
    performance_metrics: dict[str, Any]
    status: str
    created_at: str
    updated_at: str


class PartitionListResponse(BaseModel):
    items: list[PartitionResponse]


class RouteResponse(BaseModel):
    table_name: str
    partition_key: str
    value: str
    partition_id: str | None


class SweepActionResponse(BaseModel):
    partition_id: str
    partition_name: str
    table_name: str
    action: str
    horizon: str


class SweepResponse(BaseModel):
    actions: list[SweepActionResponse]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[PartitionResponse])
async def create_partition(
    request: Request,
    payload: PartitionCreateRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    partition = await service.create_data_partition(
        requested_by=principal.subject_id,
        table_name=payload.table_name,
        partition_type=payload.partition_type,
        partition_key=payload.partition_key,
        values=payload.values,
        strategy=payload.strategy,
        retention_policy=payload.retention_policy.model_dump() if payload.retention_policy else None,
        name=payload.name,
    )
    return success_response(request=request, data=partition.to_dict())


@router.get("", response_model=SuccessEnvelope[PartitionListResponse])
async def list_partitions(
    request: Request,
    table_name: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    partitions = await service.list_partitions(user_id=principal.subject_id, table_name=table_name)
    return collection_response(
        request=request, key="items", items=[item.to_dict() for item in partitions]
    )


@router.get("/route", response_model=SuccessEnvelope[RouteResponse])
async def route_partition(
    request: Request,
    table_name: str = Query(min_length=1),
    partition_key: str = Query(min_length=1),
    value: str = Query(),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    partition_id = await service.route_partition(
        user_id=principal.subject_id,
        table_name=table_name,
        partition_key=partition_key,
        value=value,
    )
    return success_response(
        request=request,
        data={
            "table_name": table_name,
            "partition_key": partition_key,
            "value": value,
            "partition_id": partition_id,
        },
    )


@router.post("/retention-sweep", response_model=SuccessEnvelope[SweepResponse])
async def retention_sweep(
    request: Request,
    table_name: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    actions = await service.run_retention_sweep(requested_by=principal.subject_id, table_name=table_name)
    return collection_response(
        request=request, key="actions", items=[action.to_dict() for action in actions]
    )
