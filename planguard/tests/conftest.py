from __future__ import annotations

import asyncio
import os
import tempfile

# Point settings at a throwaway SQLite file before any planguard module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="planguard-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/planguard.db")
os.environ.setdefault("BILLING_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("BILLING_PROVIDER", "fake")

import pytest  # noqa: E402

from planguard.core.config import get_settings  # noqa: E402
from planguard.domain.models import Base  # noqa: E402
from planguard.persistence.db import engine  # noqa: E402
from planguard.services.billing_events import reset_billing_event_processor  # noqa: E402
from planguard.services.quota import reset_quota_governor  # noqa: E402
from planguard.services.subscriptions import reset_subscription_lifecycle  # noqa: E402


async def _recreate_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build the schema from the models once; tests isolate data with unique tenant ids.
    asyncio.run(_recreate_schema())
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_service_singletons() -> None:
    # Reset cached settings and services so env overrides never leak across tests.
    yield
    get_settings.cache_clear()
    reset_quota_governor()
    reset_billing_event_processor()
    reset_subscription_lifecycle()
