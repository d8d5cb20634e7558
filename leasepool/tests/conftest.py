from __future__ import annotations

from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from leasepool.core.config import Settings
from leasepool.persistence.db import build_session_factory, create_schema
from leasepool.persistence.store import RecordStore
from leasepool.providers.events.fake import FakeEventPublisher
from leasepool.providers.provisioning.fake import FakeProvisioningProvider
from leasepool.services.resilience import BackoffExecutor, RetryPolicy
from leasepool.services.telemetry import reset_telemetry
from leasepool.tests.utils.clock import FakeClock


@pytest.fixture
def settings() -> Settings:
    # Small pages exercise cursor paging; fake providers keep tests offline.
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        cursor_secret="test-cursor-secret",
        default_page_size=2,
        max_page_size=10,
        backoff_max_attempts=5,
        backoff_starting_delay_ms=1,
        backoff_max_delay_ms=5,
        ext_call_timeout_ms=2000,
        provisioning_provider="fake",
        cost_provider="fake",
        event_bus_provider="fake",
    )


@pytest.fixture(autouse=True)
def reset_counters() -> None:
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest_asyncio.fixture
async def engine(settings: Settings):
    # One shared in-memory connection so every session sees the same tables.
    engine = create_async_engine(
        settings.database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(settings: Settings, session_factory, clock: FakeClock) -> RecordStore:
    return RecordStore(settings, session_factory, clock=clock)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def backoff(sleeps: list[float]) -> BackoffExecutor:
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return BackoffExecutor(RetryPolicy(max_attempts=5, starting_delay_ms=1000), sleep=_sleep, rng=lambda: 1.0)


@pytest.fixture
def provisioning() -> FakeProvisioningProvider:
    provider = FakeProvisioningProvider()
    provider.add_target("stackset-web")
    return provider


@pytest.fixture
def publisher() -> FakeEventPublisher:
    return FakeEventPublisher()
