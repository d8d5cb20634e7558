from __future__ import annotations

import asyncio
import json

import httpx

from leasepool.core.config import get_settings
from leasepool.core.logging import configure_logging
from leasepool.persistence.db import build_engine, build_session_factory
from leasepool.persistence.store import RecordStore
from leasepool.providers.costs.factory import get_cost_provider
from leasepool.providers.events.factory import get_event_publisher
from leasepool.services.costs import LeaseMonitoringCycle


async def _run() -> None:
    # Run a single monitoring pass outside the worker schedule.
    settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)
    try:
        async with httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0) as client:
            cycle = LeaseMonitoringCycle(
                settings,
                RecordStore(settings, build_session_factory(engine)),
                get_cost_provider(settings, client=client),
                get_event_publisher(settings, client=client),
            )
            summary = await cycle.run()
        print(json.dumps(summary.as_dict(), indent=2))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_run())
