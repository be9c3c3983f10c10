from __future__ import annotations

from typing import Any

from franchisecore.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _documented(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _documented(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing X-Subject-Id header"),
    ),
    403: _documented(
        "Forbidden",
        _error_example(
            code="AUTHZ_DENIED",
            message="Subject u1 lacks read on location: loc-2",
            details={"resource_type": "location", "resource_ids": ["loc-2"], "required_level": "read"},
        ),
    ),
    404: _documented("Not found", _error_example(code="NOT_FOUND", message="Hierarchy node not found: n1")),
    409: _documented(
        "Conflict",
        _error_example(
            code="PARTITION_OVERLAP",
            message="Partition values overlap an existing partition",
            details={"conflicting_partition_id": "p1", "overlapping_values": ["loc-1"]},
        ),
    ),
    422: _documented(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _documented("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
    502: _documented(
        "Upstream fetch failed",
        _error_example(code="UPSTREAM_FETCH_FAILED", message="Upstream fetch failed: metric:revenue"),
    ),
    503: _documented(
        "Service unavailable",
        _error_example(code="SERVICE_UNAVAILABLE", message="Service unavailable"),
    ),
}
