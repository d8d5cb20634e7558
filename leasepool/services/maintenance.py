from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasepool.persistence.repos.blueprints import delete_expired_deployments


logger = logging.getLogger(__name__)


async def prune_deployment_history(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Remove deployment attempts whose retention window has lapsed.
    return await delete_expired_deployments(session, now or datetime.now(timezone.utc))


async def run_deployment_prune(
    session_factory: async_sessionmaker[AsyncSession], *, now: datetime | None = None
) -> int:
    async with session_factory() as session:
        async with session.begin():
            deleted = await prune_deployment_history(session, now=now)
    logger.info("deployment_history_pruned deleted=%s", deleted)
    return deleted
