from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from franchisecore.core.config import get_settings
from franchisecore.core.logging import configure_logging
from franchisecore.persistence.db import sql_store_scope
from franchisecore.services.partitions import sweep_all_tenants


logger = logging.getLogger(__name__)


async def run_retention_sweep(ctx) -> dict[str, Any]:
    # One session for the whole sweep; tenants are processed sequentially.
    async with sql_store_scope() as store:
        results = await sweep_all_tenants(store)
    summary = {
        tenant_id: [action.to_dict() for action in actions]
        for tenant_id, actions in results.items()
        if actions
    }
    logger.info(
        "retention_worker_sweep tenants=%s expired=%s job_id=%s",
        len(results),
        sum(len(actions) for actions in summary.values()),
        ctx.get("job_id"),
    )
    return summary


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("retention_worker_started queue=%s", get_settings().retention_queue_name)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.retention_queue_name
    functions = [run_retention_sweep]
    cron_jobs = [
        cron(
            run_retention_sweep,
            hour={settings.retention_sweep_hour},
            minute={settings.retention_sweep_minute},
            unique=True,
        )
    ]
    on_startup = _startup
