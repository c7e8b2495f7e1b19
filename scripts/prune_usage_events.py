from __future__ import annotations

import asyncio

from planguard.persistence.db import SessionLocal
from planguard.services.maintenance import prune_audit_events, prune_usage_events


async def prune() -> None:
    async with SessionLocal() as session:
        events_deleted = await prune_usage_events(session)
        audit_deleted = await prune_audit_events(session)
        await session.commit()
        print(f"pruned_usage_events={events_deleted} pruned_audit_events={audit_deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
