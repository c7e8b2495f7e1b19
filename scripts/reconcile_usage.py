from __future__ import annotations

import argparse
import asyncio

from planguard.persistence.db import SessionLocal
from planguard.services.maintenance import reconcile_usage_counters


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report drift between usage counters and the raw usage log.")
    parser.add_argument("--repair", action="store_true", help="Overwrite drifted counters with log totals")
    return parser.parse_args()


async def reconcile(repair: bool) -> None:
    async with SessionLocal() as session:
        drifts = await reconcile_usage_counters(session, repair=repair)
        if repair:
            await session.commit()
        for drift in drifts:
            print(
                f"tenant_id={drift.tenant_id} resource={drift.resource_kind} "
                f"counter={drift.counter_value} events={drift.event_total} delta={drift.delta}"
            )
        print(f"drifted_counters={len(drifts)} repaired={repair}")


if __name__ == "__main__":
    args = _parse_args()
    asyncio.run(reconcile(args.repair))
