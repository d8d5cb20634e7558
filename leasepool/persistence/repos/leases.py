from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from leasepool.domain.models import Lease


async def insert_lease(session: AsyncSession, values: dict[str, Any]) -> Lease:
    lease = Lease(**values)
    session.add(lease)
    await session.flush()
    return lease


async def get_lease(session: AsyncSession, lease_id: str, *, refresh: bool = False) -> Lease | None:
    result = await session.execute(
        select(Lease).where(Lease.id == lease_id).execution_options(populate_existing=refresh)
    )
    return result.scalar_one_or_none()


async def update_lease(
    session: AsyncSession,
    lease_id: str,
    values: dict[str, Any],
    *,
    expected_last_edit: datetime | None = None,
) -> int:
    # Compare-and-swap on last_edit_time when the caller holds a version token.
    stmt = update(Lease).where(Lease.id == lease_id)
    if expected_last_edit is not None:
        stmt = stmt.where(Lease.last_edit_time == expected_last_edit)
    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_leases(
    session: AsyncSession,
    *,
    status: str,
    limit: int,
    after: ColumnElement[bool] | None = None,
) -> list[Lease]:
    # Status scans page on id so concurrent updates never reorder a listing.
    stmt = select(Lease).where(Lease.status == status)
    if after is not None:
        stmt = stmt.where(after)
    result = await session.execute(stmt.order_by(Lease.id.asc()).limit(limit))
    return list(result.scalars().all())
