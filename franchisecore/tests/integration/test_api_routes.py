from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from franchisecore.apps.api.deps import get_memory_store
from franchisecore.apps.api.main import create_app
from franchisecore.core.config import get_settings
from franchisecore.tests.utils.franchise import NOW, OWNER_ID, TENANT_ID, add_metric, seed_hierarchy


def _headers(subject_id: str = OWNER_ID) -> dict[str, str]:
    return {"X-Subject-Id": subject_id, "X-Tenant-Id": TENANT_ID}


@pytest.fixture
async def client(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "memory")
    get_settings.cache_clear()
    store = get_memory_store()
    await seed_hierarchy(store)
    await add_metric(store, location_id="L1", value=300.0)
    await add_metric(store, location_id="L2", value=700.0)
    transport = ASGITransport(app=create_app())
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


def _partition_body(values: list[str]) -> dict:
    return {
        "table_name": "metric_records",
        "partition_type": "location",
        "partition_key": "location_id",
        "values": values,
        "strategy": "list",
    }


@pytest.mark.asyncio
async def test_health_uses_the_success_envelope(client: AsyncClient) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"]["request_id"] == "req-1"
    assert response.headers["X-Request-Id"] == "req-1"


@pytest.mark.asyncio
async def test_missing_identity_is_unauthorized(client: AsyncClient) -> None:
    response = await client.get("/v1/hierarchy", headers={"X-Tenant-Id": TENANT_ID})

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_hierarchy_read_and_node_creation(client: AsyncClient) -> None:
    response = await client.get("/v1/hierarchy", headers=_headers())

    assert response.status_code == 200
    roots = response.json()["data"]["roots"]
    assert [root["id"] for root in roots] == ["F"]
    assert [child["id"] for child in roots[0]["children"]] == ["R1", "R2"]

    created = await client.post(
        "/v1/hierarchy/nodes",
        json={"name": "Station", "node_type": "location", "parent_id": "R2", "node_id": "L9"},
        headers=_headers(),
    )
    assert created.status_code == 201
    assert created.json()["data"]["path"] == "F/R2/L9"
    assert created.json()["data"]["level"] == 2

    denied = await client.post(
        "/v1/hierarchy/nodes",
        json={"name": "Pier", "node_type": "location", "parent_id": "R2"},
        headers=_headers("stranger"),
    )
    assert denied.status_code == 403
    error = denied.json()["error"]
    assert error["code"] == "AUTHZ_DENIED"
    assert error["details"]["resource_ids"] == ["R2"]


@pytest.mark.asyncio
async def test_moving_a_node_under_itself_is_a_conflict(client: AsyncClient) -> None:
    response = await client.post(
        "/v1/hierarchy/nodes/R1/reparent", json={"new_parent_id": "L1"}, headers=_headers()
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "HIERARCHY_CYCLE"


@pytest.mark.asyncio
async def test_aggregation_create_and_list(client: AsyncClient) -> None:
    body = {
        "name": "Weekly revenue",
        "location_ids": ["L1", "L2"],
        "metrics": ["revenue"],
        "time_period": {
            "start": (NOW - timedelta(days=7)).isoformat(),
            "end": NOW.isoformat(),
        },
    }

    response = await client.post("/v1/aggregations", json=body, headers=_headers())

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["aggregated_data"]["revenue"]["total"] == pytest.approx(1000.0)
    assert data["aggregated_data"]["revenue"]["by_location"][0]["location_name"] == "Airport"
    listed = await client.get("/v1/aggregations", headers=_headers())
    assert listed.json()["meta"]["item_count"] == 1
    assert [item["aggregation_id"] for item in listed.json()["data"]["items"]] == [
        data["aggregation_id"]
    ]


@pytest.mark.asyncio
async def test_partitions_follow_the_feature_switch(client: AsyncClient) -> None:
    blocked = await client.post("/v1/partitions", json=_partition_body(["L1", "L2"]), headers=_headers())
    assert blocked.status_code == 403
    assert blocked.json()["error"]["code"] == "FEATURE_NOT_ENABLED"
    assert blocked.json()["error"]["details"] == {"feature_key": "data_partitioning"}

    patched = await client.patch(
        "/v1/tenant/config",
        json={
            "configuration": {
                "features_enabled": [
                    "cross_location_aggregation",
                    "granular_permissions",
                    "data_partitioning",
                ]
            }
        },
        headers=_headers(),
    )
    assert patched.status_code == 200
    assert "data_partitioning" in patched.json()["data"]["configuration"]["features_enabled"]

    created = await client.post("/v1/partitions", json=_partition_body(["L1", "L2"]), headers=_headers())
    assert created.status_code == 201
    partition_id = created.json()["data"]["partition_id"]

    overlap = await client.post("/v1/partitions", json=_partition_body(["L2", "L3"]), headers=_headers())
    assert overlap.status_code == 409
    error = overlap.json()["error"]
    assert error["code"] == "PARTITION_OVERLAP"
    assert error["details"]["conflicting_partition_id"] == partition_id
    assert error["details"]["overlapping_values"] == ["L2"]

    routed = await client.get(
        "/v1/partitions/route",
        params={"table_name": "metric_records", "partition_key": "location_id", "value": "L1"},
        headers=_headers(),
    )
    assert routed.json()["data"]["partition_id"] == partition_id


@pytest.mark.asyncio
async def test_request_validation_uses_the_error_envelope(client: AsyncClient) -> None:
    response = await client.post(
        "/v1/partitions",
        json={**_partition_body(["L1"]), "strategy": "round_robin"},
        headers=_headers(),
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_grants_and_access_checks(client: AsyncClient) -> None:
    granted = await client.post(
        "/v1/permissions/grants",
        json={"user_id": "manager", "resource_type": "region", "resource_id": "R1", "level": "read"},
        headers=_headers(),
    )
    assert granted.status_code == 201
    assert granted.json()["data"]["level"] == "read"

    allowed = await client.get(
        "/v1/permissions/check",
        params={"resource_type": "location", "resource_id": "L2", "level": "read"},
        headers=_headers("manager"),
    )
    assert allowed.json()["data"]["allowed"] is True
    refused = await client.get(
        "/v1/permissions/check",
        params={"resource_type": "location", "resource_id": "L3"},
        headers=_headers("manager"),
    )
    assert refused.json()["data"]["allowed"] is False

    escalation = await client.post(
        "/v1/permissions/grants",
        json={"user_id": "friend", "resource_type": "region", "resource_id": "R1", "level": "admin"},
        headers=_headers("manager"),
    )
    assert escalation.status_code == 403
    assert escalation.json()["error"]["code"] == "GRANT_PRIVILEGE_INSUFFICIENT"

    revoked = await client.post(
        f"/v1/permissions/grants/{granted.json()['data']['id']}/revoke",
        json={"reason": "rotation"},
        headers=_headers(),
    )
    assert revoked.status_code == 200
    assert revoked.json()["data"]["reason"] == "rotation"
    after = await client.get(
        "/v1/permissions/check",
        params={"resource_type": "location", "resource_id": "L2"},
        headers=_headers("manager"),
    )
    assert after.json()["data"]["allowed"] is False


@pytest.mark.asyncio
async def test_ops_metrics_report_request_samples(client: AsyncClient) -> None:
    await client.get("/v1/hierarchy", headers=_headers())

    response = await client.get("/v1/ops/metrics")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["store_backend"] == "memory"
    assert data["db_pool"] is None
    assert data["request_p95_ms"] is not None
