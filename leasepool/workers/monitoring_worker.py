from __future__ import annotations

import logging

import httpx
from arq import cron
from arq.connections import RedisSettings

from leasepool.core.config import Settings, get_settings
from leasepool.core.logging import configure_logging
from leasepool.persistence.db import build_engine, build_session_factory
from leasepool.persistence.store import RecordStore
from leasepool.providers.costs.factory import get_cost_provider
from leasepool.providers.events.factory import get_event_publisher
from leasepool.services.costs import LeaseMonitoringCycle
from leasepool.services.maintenance import run_deployment_prune


logger = logging.getLogger(__name__)


def parse_cron_minutes(value: str) -> set[int]:
    # Accept "0,15,30,45" style lists; out-of-range entries are rejected early.
    minutes = {int(part) for part in value.split(",") if part.strip()}
    if not minutes or any(minute < 0 or minute > 59 for minute in minutes):
        raise ValueError(f"Invalid monitoring cron minutes: {value!r}")
    return minutes


async def run_lease_monitoring(ctx) -> dict:
    # Summary is returned so arq keeps it as the job result.
    cycle: LeaseMonitoringCycle = ctx["monitoring_cycle"]
    summary = await cycle.run()
    return summary.as_dict()


async def prune_deployments(ctx) -> int:
    return await run_deployment_prune(ctx["session_factory"])


async def _startup(ctx) -> None:
    # Build one engine and one HTTP client per worker process.
    settings: Settings = get_settings()
    configure_logging(settings)
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    client = httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)
    store = RecordStore(settings, session_factory)
    ctx["engine"] = engine
    ctx["http_client"] = client
    ctx["session_factory"] = session_factory
    ctx["monitoring_cycle"] = LeaseMonitoringCycle(
        settings,
        store,
        get_cost_provider(settings, client=client),
        get_event_publisher(settings, client=client),
    )
    logger.info("monitoring_worker_started cost_provider=%s event_bus=%s", settings.cost_provider, settings.event_bus_provider)


async def _shutdown(ctx) -> None:
    # Release pooled connections so restarts do not leak sockets.
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()
    engine = ctx.get("engine")
    if engine is not None:
        await engine.dispose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [run_lease_monitoring, prune_deployments]
    cron_jobs = [
        cron(run_lease_monitoring, minute=parse_cron_minutes(settings.monitoring_cron_minutes), unique=True),
        cron(prune_deployments, hour={settings.deployment_prune_cron_hour}, minute={0}, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
