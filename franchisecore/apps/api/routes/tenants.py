from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from franchisecore.apps.api.deps import Principal, get_franchise_service, get_principal
from franchisecore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from franchisecore.apps.api.response import SuccessEnvelope, success_response
from franchisecore.services.franchise import FranchiseService
from franchisecore.services.tenants import TenantConfiguration


router = APIRouter(prefix="/tenant", tags=["tenant"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("/config", response_model=SuccessEnvelope[TenantConfiguration])
async def get_config(
    request: Request,
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    config = await service.get_tenant_configuration(user_id=principal.subject_id)
    return success_response(request=request, data=config.model_dump(mode="json"))


@router.patch("/config", response_model=SuccessEnvelope[TenantConfiguration])
async def patch_config(
    request: Request,
    # Partial document deep-merged into the stored configuration.
    payload: dict[str, Any] = Body(...),
    principal: Principal = Depends(get_principal),
    service: FranchiseService = Depends(get_franchise_service),
) -> dict:
    config = await service.configure_tenant(requested_by=principal.subject_id, partial=payload)
    return success_response(request=request, data=config.model_dump(mode="json"))
