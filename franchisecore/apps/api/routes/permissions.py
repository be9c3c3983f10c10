from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from franchisecore.apps.api.deps import Principal, get_franchise_service, get_principal
from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, collection_response, success_response
from franchisecore.services.franchise import FranchiseService


router = APIRouter(prefix="/permissions", tags=["permissions"], responses=DEFAULT_ERROR_RESPONSES)

LevelName = Literal["read", "write", "admin", "owner"]


class GrantCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    resource_type: str = Field(min_length=1, max_length=64)
    resource_id: str = Field(min_length=1, max_length=128)
    level: LevelName
    conditions: dict[str, Any] | None = None
    expires_at: datetime | None = None

    model_config = {"extra": "forbid"}


class RevokeRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=512)

    model_config = {"extra": "forbid"}


class GrantResponse(BaseModel):
    id: str
    tenant_id: str
    subject_id: str
    resource_type: str
    resource_id: str
    level: str
    conditions: dict[str, Any]
    granted_by: str
    granted_at: str
    expires_at: str | None
    is_inherited: bool
    inheritance_path: list[str]
    supersedes_id: str | None


class EffectiveGrantResponse(GrantResponse):
    effective_level: str
    source: str


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    items: list[EffectiveGrantResponse]


class RevocationResponse(BaseModel):
    revocation_id: str
    grant_id: str
    subject_id: str
    revoked_by: str
    revoked_at: str
    reason: str | None


class AccessCheckResponse(BaseModel):
    allowed: bool
    resource_type: str
    resource_id: str
    required_level: str


@router.get("/effective", response_model=SuccessEnvelope[EffectivePermissionsResponse])
async def effective_permissions(
    request: Request,
    user_id: str | None = Query(default=None),
    resource_type: str | None = Query(default=None),
    resource_id: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    subject = user_id or principal.subject_id
    grants = await service.get_user_effective_permissions(
        subject, resource_type, resource_id, requested_by=principal.subject_id
    )
    return collection_response(
        request=request,
        key="items",
        items=[grant.to_dict() for grant in grants],
        user_id=subject,
    )


@router.get("/check", response_model=SuccessEnvelope[AccessCheckResponse])
async def check_access(
    request: Request,
    resource_type: str = Query(min_length=1),
    resource_id: str = Query(min_length=1),
    level: LevelName = Query(default="read"),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    allowed = await service.check_access(principal.subject_id, resource_type, resource_id, level)
    return success_response(
        request=request,
        data={
            "allowed": allowed,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "required_level": level,
        },
    )


@router.post(
    "/grants",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[GrantResponse],
)
async def create_grant(
    request: Request,
    payload: GrantCreateRequest,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    grant = await service.grant_granular_permission(
        user_id=payload.user_id,
        resource_type=payload.resource_type,
        resource_id=payload.resource_id,
        level=payload.level,
        conditions=payload.conditions,
        granted_by=principal.subject_id,
        expires_at=payload.expires_at,
    )
    return success_response(request=request, data=grant.to_dict())


@router.post("/grants/{grant_id}/revoke", response_model=SuccessEnvelope[RevocationResponse])
async def revoke_grant(
    grant_id: str,
    request: Request,
    payload: RevokeRequest | None = None,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    revocation = await service.revoke_permission(
        grant_id=grant_id,
        revoked_by=principal.subject_id,
        reason=payload.reason if payload else None,
    )
    return success_response(request=request, data=revocation.to_dict())
