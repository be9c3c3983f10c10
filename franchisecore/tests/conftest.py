from __future__ import annotations

import pytest

from franchisecore.apps.api.deps import reset_memory_store
from franchisecore.core.config import get_settings
from franchisecore.persistence.memory import InMemoryStore
from franchisecore.services.aggregation import reset_inflight_aggregations
from franchisecore.services.aggregation_cache import reset_aggregation_cache
from franchisecore.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Module-level caches and samples must not leak between tests.
    get_settings.cache_clear()
    reset_aggregation_cache()
    reset_inflight_aggregations()
    reset_telemetry()
    reset_memory_store()
    yield
    get_settings.cache_clear()
    reset_aggregation_cache()
    reset_inflight_aggregations()
    reset_memory_store()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
