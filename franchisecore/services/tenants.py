from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from franchisecore.core.errors import ConfigLimitExceeded, FeatureNotEnabledError, TenantConfigInvalid
from franchisecore.domain.types import ensure_utc, utc_now
from franchisecore.persistence.store import RecordStore


logger = logging.getLogger(__name__)

TENANT_CONFIG_TABLE = "tenant_configurations"

FEATURE_CROSS_LOCATION_AGGREGATION = "cross_location_aggregation"
FEATURE_GRANULAR_PERMISSIONS = "granular_permissions"
FEATURE_DATA_PARTITIONING = "data_partitioning"

DEFAULT_FEATURES = [FEATURE_CROSS_LOCATION_AGGREGATION, FEATURE_GRANULAR_PERMISSIONS]

# Platform-wide ceilings no tenant plan may exceed.
MAX_LOCATIONS_LIMIT = 1000
MAX_USERS_LIMIT = 10000

_HARD_LIMITS = {
    "max_locations": MAX_LOCATIONS_LIMIT,
    "max_users": MAX_USERS_LIMIT,
}


class ApiRateLimits(BaseModel):
    requests_per_minute: int = Field(default=600, ge=1)
    requests_per_hour: int = Field(default=20000, ge=1)


class TenantLimits(BaseModel):
    # Plan limits and feature switches consulted before expensive work.
    max_locations: int = Field(default=100, ge=0)
    max_users: int = Field(default=500, ge=0)
    features_enabled: list[str] = Field(default_factory=lambda: list(DEFAULT_FEATURES))
    storage_limit_gb: int = Field(default=100, ge=0)
    api_rate_limits: ApiRateLimits = Field(default_factory=ApiRateLimits)
    data_retention_days: int = Field(default=365, ge=1)
    backup_frequency: Literal["daily", "weekly", "monthly"] = "daily"


class BillingInfo(BaseModel):
    plan: str = "standard"
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    next_billing_date: date | None = None
    usage_metrics: dict[str, Any] = Field(default_factory=dict)


class ComplianceSettings(BaseModel):
    data_residency: str = "us"
    encryption_level: Literal["standard", "enhanced"] = "standard"
    audit_logging: bool = True
    gdpr_compliance: bool = False


class TenantConfiguration(BaseModel):
    tenant_id: str
    tenant_name: str
    tenant_type: Literal["enterprise", "standard", "basic"] = "standard"
    configuration: TenantLimits = Field(default_factory=TenantLimits)
    billing_info: BillingInfo = Field(default_factory=BillingInfo)
    compliance_settings: ComplianceSettings = Field(default_factory=ComplianceSettings)
    updated_at: datetime | None = None

    def has_feature(self, feature_key: str) -> bool:
        return feature_key in self.configuration.features_enabled

    def comparable(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"updated_at"})

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "TenantConfiguration":
        return cls.model_validate(
            {
                "tenant_id": record["tenant_id"],
                "tenant_name": record["tenant_name"],
                "tenant_type": record["tenant_type"],
                "configuration": record.get("configuration_json") or {},
                "billing_info": record.get("billing_info_json") or {},
                "compliance_settings": record.get("compliance_settings_json") or {},
                "updated_at": ensure_utc(record.get("updated_at")),
            }
        )

    def to_record(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        return {
            "tenant_id": self.tenant_id,
            "tenant_name": self.tenant_name,
            "tenant_type": self.tenant_type,
            "configuration_json": payload["configuration"],
            "billing_info_json": payload["billing_info"],
            "compliance_settings_json": payload["compliance_settings"],
            "updated_at": self.updated_at,
        }


def default_configuration(tenant_id: str) -> TenantConfiguration:
    # Tenants without stored settings run on the standard plan; partitioning stays opt-in.
    return TenantConfiguration(tenant_id=tenant_id, tenant_name=tenant_id)


def deep_merge(base: dict[str, Any], partial: dict[str, Any]) -> dict[str, Any]:
    """Merge ``partial`` into a copy of ``base``.

    Nested objects merge key by key; every other value, lists included,
    replaces the stored value so re-applying a partial is a no-op.
    """
    merged = dict(base)
    for key, value in partial.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def enforce_hard_limits(config: TenantConfiguration) -> None:
    for limit_name, ceiling in _HARD_LIMITS.items():
        requested = getattr(config.configuration, limit_name)
        if requested > ceiling:
            raise ConfigLimitExceeded(limit_name=limit_name, limit=ceiling, requested=requested)


async def load_configuration(store: RecordStore, tenant_id: str) -> TenantConfiguration | None:
    rows = await store.read(TENANT_CONFIG_TABLE, {"tenant_id": tenant_id})
    if not rows:
        return None
    return TenantConfiguration.from_record(rows[0])


async def get_configuration(store: RecordStore, tenant_id: str) -> TenantConfiguration:
    stored = await load_configuration(store, tenant_id)
    return stored or default_configuration(tenant_id)


async def configure_tenant(
    store: RecordStore,
    tenant_id: str,
    partial: dict[str, Any],
    *,
    clock: Callable[[], datetime] | None = None,
) -> TenantConfiguration:
    if not isinstance(partial, dict):
        raise TenantConfigInvalid("Configuration update must be an object")
    if partial.get("tenant_id") not in (None, tenant_id):
        raise TenantConfigInvalid("tenant_id cannot be changed")
    stored = await load_configuration(store, tenant_id)
    current = stored or default_configuration(tenant_id)

    updates = {key: value for key, value in partial.items() if key not in {"tenant_id", "updated_at"}}
    merged = deep_merge(current.comparable(), updates)
    merged["tenant_id"] = tenant_id
    try:
        candidate = TenantConfiguration.model_validate(merged)
    except ValidationError as exc:
        raise TenantConfigInvalid(str(exc)) from exc
    enforce_hard_limits(candidate)

    if stored is not None and candidate.comparable() == stored.comparable():
        # Nothing changed; keep the stored row and its timestamp untouched.
        return stored

    candidate.updated_at = (clock or utc_now)()
    record = await store.upsert(TENANT_CONFIG_TABLE, candidate.to_record())
    logger.info(
        "tenant_config_updated tenant_id=%s tenant_type=%s max_locations=%s max_users=%s",
        tenant_id,
        candidate.tenant_type,
        candidate.configuration.max_locations,
        candidate.configuration.max_users,
    )
    return TenantConfiguration.from_record(record)


class TenantGate:
    """Feature and quota checks consulted before expensive or privileged work."""

    def __init__(self, store: RecordStore, tenant_id: str) -> None:
        self._store = store
        self.tenant_id = tenant_id
        self._config: TenantConfiguration | None = None

    async def config(self) -> TenantConfiguration:
        if self._config is None:
            self._config = await get_configuration(self._store, self.tenant_id)
        return self._config

    async def require_feature(self, feature_key: str) -> None:
        config = await self.config()
        if not config.has_feature(feature_key):
            logger.info("tenant_feature_blocked tenant_id=%s feature=%s", self.tenant_id, feature_key)
            raise FeatureNotEnabledError(tenant_id=self.tenant_id, feature_key=feature_key)

    async def require_within_limit(self, limit_name: str, requested: int) -> None:
        config = await self.config()
        limit = getattr(config.configuration, limit_name, None)
        if not isinstance(limit, int):
            raise TenantConfigInvalid(f"Unknown tenant limit: {limit_name}")
        if requested > limit:
            logger.info(
                "tenant_limit_blocked tenant_id=%s limit=%s requested=%s allowed=%s",
                self.tenant_id,
                limit_name,
                requested,
                limit,
            )
            raise ConfigLimitExceeded(limit_name=limit_name, limit=limit, requested=requested)

    async def require_location_capacity(self, count: int) -> None:
        await self.require_within_limit("max_locations", count)

    async def require_user_capacity(self, count: int) -> None:
        await self.require_within_limit("max_users", count)
