from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from franchisecore.apps.api.response import error_response
from franchisecore.core.errors import (
    AccessDeniedError,
    AggregationRequestError,
    ConfigLimitExceeded,
    CycleError,
    DatabaseError,
    FeatureNotEnabledError,
    FranchiseCoreError,
    GrantNotFoundError,
    HierarchyValidationError,
    InsufficientGranterPrivilege,
    InvalidGrantError,
    NodeNotFoundError,
    OverlappingPartitionError,
    PartitionStrategyConflictError,
    PartitionValueError,
    TenantConfigInvalid,
    UpstreamFetchError,
)


logger = logging.getLogger(__name__)


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_FETCH_FAILED",
    503: "SERVICE_UNAVAILABLE",
}

# Checked in order, so subclasses precede their bases.
_DOMAIN_ERRORS: tuple[tuple[type[FranchiseCoreError], int, str], ...] = (
    (AccessDeniedError, 403, "AUTHZ_DENIED"),
    (InsufficientGranterPrivilege, 403, "GRANT_PRIVILEGE_INSUFFICIENT"),
    (FeatureNotEnabledError, 403, "FEATURE_NOT_ENABLED"),
    (NodeNotFoundError, 404, "NOT_FOUND"),
    (GrantNotFoundError, 404, "NOT_FOUND"),
    (CycleError, 409, "HIERARCHY_CYCLE"),
    (PartitionStrategyConflictError, 409, "PARTITION_STRATEGY_CONFLICT"),
    (OverlappingPartitionError, 409, "PARTITION_OVERLAP"),
    (ConfigLimitExceeded, 422, "CONFIG_LIMIT_EXCEEDED"),
    (TenantConfigInvalid, 422, "TENANT_CONFIG_INVALID"),
    (HierarchyValidationError, 422, "HIERARCHY_INVALID"),
    (InvalidGrantError, 422, "GRANT_INVALID"),
    (PartitionValueError, 422, "PARTITION_INVALID"),
    (AggregationRequestError, 422, "AGGREGATION_INVALID"),
    (UpstreamFetchError, 502, "UPSTREAM_FETCH_FAILED"),
    (DatabaseError, 503, "SERVICE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Accept either a plain message or a {code, message, ...} detail payload.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_error(exc: FranchiseCoreError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


def _error_details(exc: FranchiseCoreError) -> dict[str, Any] | None:
    if isinstance(exc, AccessDeniedError):
        return {
            "resource_type": exc.resource_type,
            "resource_ids": exc.resource_ids,
            "required_level": exc.required_level,
        }
    if isinstance(exc, InsufficientGranterPrivilege):
        return {
            "resource_type": exc.resource_type,
            "resource_id": exc.resource_id,
            "requested_level": exc.requested_level,
            "granter_level": exc.granter_level,
        }
    if isinstance(exc, OverlappingPartitionError):
        return {
            "table_name": exc.table_name,
            "partition_key": exc.partition_key,
            "conflicting_partition_id": exc.conflicting_partition_id,
            "overlapping_values": exc.overlapping_values,
        }
    if isinstance(exc, CycleError):
        return {"node_id": exc.node_id, "new_parent_id": exc.new_parent_id}
    if isinstance(exc, ConfigLimitExceeded):
        return {"limit_name": exc.limit_name, "limit": exc.limit, "requested": exc.requested}
    if isinstance(exc, FeatureNotEnabledError):
        return {"feature_key": exc.feature_key}
    if isinstance(exc, UpstreamFetchError):
        return {"operation": exc.operation}
    return None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def franchise_error_handler(request: Request, exc: FranchiseCoreError) -> JSONResponse:
    status_code, code = classify_error(exc)
    if status_code >= 500:
        logger.warning(
            "request_failed path=%s code=%s error=%s", request.url.path, code, exc
        )
    # Infrastructure failures keep their messages internal.
    message = str(exc) if status_code < 503 else "Service unavailable"
    payload = error_response(
        request=request, code=code, message=message, details=_error_details(exc)
    )
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
