from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from franchisecore.apps.api.deps import Principal, get_franchise_service, get_principal
from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, collection_response, success_response
from franchisecore.services.franchise import FranchiseService


router = APIRouter(prefix="/hierarchy", tags=["hierarchy"], responses=DEFAULT_ERROR_RESPONSES)


class NodeCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    node_type: str
    parent_id: str | None = None
    node_id: str | None = Field(default=None, min_length=1, max_length=64)
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "forbid"}


class NodeMoveRequest(BaseModel):
    new_parent_id: str | None = None

    model_config = {"extra": "forbid"}


class NodeStatusRequest(BaseModel):
    status: str

    model_config = {"extra": "forbid"}


class NodeResponse(BaseModel):
    id: str
    name: str
    type: str
    parent_id: str | None
    level: int
    path: str
    operational_status: str
    metadata: dict[str, Any]


class TreeNodeResponse(NodeResponse):
    children: list["TreeNodeResponse"]


class HierarchyResponse(BaseModel):
    roots: list[TreeNodeResponse]


@router.get("", response_model=SuccessEnvelope[HierarchyResponse])
async def get_hierarchy(
    request: Request,
    root_id: str | None = Query(default=None),
    max_depth: int | None = Query(default=None, ge=0, le=64),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    roots = await service.get_franchise_hierarchy(
        principal.subject_id, root_id=root_id, max_depth=max_depth
    )
    return collection_response(
        request=request, key="roots", items=[root.to_dict() for root in roots]
    )


@router.post(
    "/nodes",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[NodeResponse],
)
async def create_node(
    request: Request,
    payload: NodeCreateRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    node = await service.create_hierarchy_node(
        requested_by=principal.subject_id,
        name=payload.name,
        node_type=payload.node_type,
        parent_id=payload.parent_id,
        metadata=payload.metadata,
        node_id=payload.node_id,
    )
    return success_response(request=request, data=node.to_dict())


@router.post("/nodes/{node_id}/reparent", response_model=SuccessEnvelope[NodeResponse])
async def move_node(
    node_id: str,
    request: Request,
    payload: NodeMoveRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    node = await service.reparent_node(
        requested_by=principal.subject_id, node_id=node_id, new_parent_id=payload.new_parent_id
    )
    return success_response(request=request, data=node.to_dict())


@router.patch("/nodes/{node_id}/status", response_model=SuccessEnvelope[NodeResponse])
async def set_node_status(
    node_id: str,
    request: Request,
    payload: NodeStatusRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    node = await service.set_node_status(
        requested_by=principal.subject_id, node_id=node_id, status=payload.status
    )
    return success_response(request=request, data=node.to_dict())
