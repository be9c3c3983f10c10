from __future__ import annotations

import asyncio
from datetime import timedelta
import sys

from franchisecore.core.logging import configure_logging
from franchisecore.domain.types import utc_now
from franchisecore.persistence.db import sql_store_scope
from franchisecore.services.authz.resolver import RESOURCE_TENANT, issue_bootstrap_grant
from franchisecore.services.hierarchy import HierarchyStore
from franchisecore.services.tenants import (
    DEFAULT_FEATURES,
    FEATURE_DATA_PARTITIONING,
    configure_tenant,
)


DEMO_TENANT_ID = "t1"
DEMO_OWNER_ID = "owner-1"
DEMO_FRANCHISOR_ID = "hq"

# (node_id, name, node_type, parent_id) in creation order.
DEMO_NODES: tuple[tuple[str, str, str, str | None], ...] = (
    (DEMO_FRANCHISOR_ID, "Demo Franchise HQ", "franchisor", None),
    ("region-west", "West Region", "region", DEMO_FRANCHISOR_ID),
    ("region-east", "East Region", "region", DEMO_FRANCHISOR_ID),
    ("area-bay", "Bay Area", "area", "region-west"),
    ("area-metro", "Metro Area", "area", "region-east"),
    ("loc-sf", "San Francisco", "location", "area-bay"),
    ("loc-oak", "Oakland", "location", "area-bay"),
    ("loc-nyc", "New York", "location", "area-metro"),
)

# Daily revenue per location for the last week.
DEMO_REVENUE = {"loc-sf": 1200.0, "loc-oak": 800.0, "loc-nyc": 1500.0}


async def seed_demo() -> int:
    async with sql_store_scope() as store:
        hierarchy = HierarchyStore(store, DEMO_TENANT_ID)
        if await hierarchy.find_node(DEMO_FRANCHISOR_ID) is not None:
            print("Demo franchise already seeded; skipping.")
            return 0

        await configure_tenant(
            store,
            DEMO_TENANT_ID,
            {
                "tenant_name": "Demo Franchise",
                "configuration": {
                    "features_enabled": [*DEFAULT_FEATURES, FEATURE_DATA_PARTITIONING],
                },
            },
        )
        for node_id, name, node_type, parent_id in DEMO_NODES:
            await hierarchy.create_node(
                node_id=node_id, name=name, node_type=node_type, parent_id=parent_id
            )
        for resource_type, resource_id in (
            (RESOURCE_TENANT, DEMO_TENANT_ID),
            ("franchisor", DEMO_FRANCHISOR_ID),
        ):
            await issue_bootstrap_grant(
                store,
                tenant_id=DEMO_TENANT_ID,
                subject_id=DEMO_OWNER_ID,
                resource_type=resource_type,
                resource_id=resource_id,
            )

        now = utc_now()
        count = 0
        for location_id, daily in DEMO_REVENUE.items():
            for day in range(7):
                await store.insert(
                    "metric_records",
                    {
                        "id": f"demo-{location_id}-{day}",
                        "tenant_id": DEMO_TENANT_ID,
                        "location_id": location_id,
                        "metric": "revenue",
                        "value": daily,
                        "recorded_at": now - timedelta(days=day),
                    },
                )
                count += 1
        print(
            f"Seeded tenant {DEMO_TENANT_ID} with {len(DEMO_NODES)} nodes and {count} metric records; "
            f"owner is {DEMO_OWNER_ID}."
        )
        return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
