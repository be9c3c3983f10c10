from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import json
import sys

from franchisecore.core.logging import configure_logging
from franchisecore.domain.types import ensure_utc
from franchisecore.persistence.db import sql_store_scope
from franchisecore.services.partitions import PartitionManager, sweep_all_tenants


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Archive or drop partitions past retention.")
    parser.add_argument("--tenant-id", help="Limit the sweep to one tenant")
    parser.add_argument("--table", help="Limit the sweep to one table (requires --tenant-id)")
    parser.add_argument("--now", help="ISO timestamp to evaluate retention against")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    now = ensure_utc(datetime.fromisoformat(args.now)) if args.now else None
    async with sql_store_scope() as store:
        if args.tenant_id:
            actions = await PartitionManager(store, args.tenant_id).run_retention_sweep(
                table_name=args.table, now=now
            )
            results = {args.tenant_id: actions}
        else:
            results = await sweep_all_tenants(store, now=now)
    payload = {
        tenant_id: [action.to_dict() for action in actions]
        for tenant_id, actions in results.items()
    }
    print(json.dumps(payload, indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _parse_args(argv)
    if args.table and not args.tenant_id:
        print("--table requires --tenant-id", file=sys.stderr)
        return 2
    try:
        return asyncio.run(run(args))
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"retention_sweep failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
