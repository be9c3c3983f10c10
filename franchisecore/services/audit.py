from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from franchisecore.core.config import get_settings
from franchisecore.core.errors import DatabaseError
from franchisecore.domain.types import utc_now
from franchisecore.persistence.store import RecordStore


logger = logging.getLogger(__name__)

SECURITY_EVENTS_TABLE = "security_events"

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "billing"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_security_event(
    store: RecordStore,
    *,
    tenant_id: str | None,
    subject_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    requested_level: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking user flows.
    if not get_settings().security_events_enabled:
        return
    record = {
        "id": uuid4().hex,
        "tenant_id": tenant_id,
        "occurred_at": utc_now(),
        "subject_id": subject_id,
        "event_type": event_type,
        "outcome": outcome,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "requested_level": requested_level,
        "metadata_json": sanitize_metadata(metadata or {}),
    }
    try:
        await store.insert(SECURITY_EVENTS_TABLE, record)
    except DatabaseError as exc:
        logger.warning(
            "security_event_write_failed event_type=%s tenant_id=%s",
            event_type,
            tenant_id,
            exc_info=exc,
        )
