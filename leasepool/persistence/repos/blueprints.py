from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import ColumnElement

from leasepool.domain.models import Blueprint, DeploymentRecord, DeploymentTarget


async def get_blueprint(session: AsyncSession, blueprint_id: str, *, refresh: bool = False) -> Blueprint | None:
    result = await session.execute(
        select(Blueprint).where(Blueprint.id == blueprint_id).execution_options(populate_existing=refresh)
    )
    return result.scalar_one_or_none()


async def get_targets(session: AsyncSession, blueprint_id: str, *, refresh: bool = False) -> list[DeploymentTarget]:
    # Targets roll out in deployment_order; target_id breaks ties deterministically.
    result = await session.execute(
        select(DeploymentTarget)
        .where(DeploymentTarget.blueprint_id == blueprint_id)
        .order_by(DeploymentTarget.deployment_order, DeploymentTarget.target_id)
        .execution_options(populate_existing=refresh)
    )
    return list(result.scalars().all())


async def get_target(
    session: AsyncSession, blueprint_id: str, target_id: str, *, refresh: bool = False
) -> DeploymentTarget | None:
    result = await session.execute(
        select(DeploymentTarget)
        .where(DeploymentTarget.blueprint_id == blueprint_id, DeploymentTarget.target_id == target_id)
        .execution_options(populate_existing=refresh)
    )
    return result.scalar_one_or_none()


async def insert_blueprint(
    session: AsyncSession, blueprint_values: dict[str, Any], target_values: dict[str, Any]
) -> tuple[Blueprint, DeploymentTarget]:
    # Flush the parent first so the target row satisfies its foreign key.
    blueprint = Blueprint(**blueprint_values)
    session.add(blueprint)
    await session.flush()
    target = DeploymentTarget(blueprint_id=blueprint.id, **target_values)
    session.add(target)
    await session.flush()
    return blueprint, target


async def update_blueprint(
    session: AsyncSession,
    blueprint_id: str,
    values: dict[str, Any],
    *,
    expected_last_edit: datetime | None = None,
) -> int:
    stmt = update(Blueprint).where(Blueprint.id == blueprint_id)
    if expected_last_edit is not None:
        stmt = stmt.where(Blueprint.last_edit_time == expected_last_edit)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


async def update_target(
    session: AsyncSession,
    blueprint_id: str,
    target_id: str,
    values: dict[str, Any],
    *,
    expected_last_edit: datetime | None = None,
) -> int:
    stmt = update(DeploymentTarget).where(
        DeploymentTarget.blueprint_id == blueprint_id,
        DeploymentTarget.target_id == target_id,
    )
    if expected_last_edit is not None:
        stmt = stmt.where(DeploymentTarget.last_edit_time == expected_last_edit)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return int(result.rowcount or 0)


async def delete_blueprint(session: AsyncSession, blueprint_id: str) -> int:
    # Children first; deployment history is intentionally left in place.
    await session.execute(
        delete(DeploymentTarget)
        .where(DeploymentTarget.blueprint_id == blueprint_id)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        delete(Blueprint).where(Blueprint.id == blueprint_id).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_blueprints(
    session: AsyncSession, *, limit: int, after: ColumnElement[bool] | None = None
) -> list[Blueprint]:
    stmt = select(Blueprint)
    if after is not None:
        stmt = stmt.where(after)
    result = await session.execute(stmt.order_by(Blueprint.id.asc()).limit(limit))
    return list(result.scalars().all())


async def insert_deployment(session: AsyncSession, values: dict[str, Any]) -> DeploymentRecord:
    record = DeploymentRecord(**values)
    session.add(record)
    await session.flush()
    return record


def _deployment_key(blueprint_id: str, started_at: datetime, operation_id: str) -> list[ColumnElement[bool]]:
    return [
        DeploymentRecord.blueprint_id == blueprint_id,
        DeploymentRecord.started_at == started_at,
        DeploymentRecord.operation_id == operation_id,
    ]


async def get_deployment(
    session: AsyncSession, blueprint_id: str, started_at: datetime, operation_id: str
) -> DeploymentRecord | None:
    result = await session.execute(
        select(DeploymentRecord)
        .where(*_deployment_key(blueprint_id, started_at, operation_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def complete_deployment(
    session: AsyncSession,
    blueprint_id: str,
    started_at: datetime,
    operation_id: str,
    values: dict[str, Any],
) -> int:
    # Only a RUNNING row may transition; terminal rows are immutable.
    result = await session.execute(
        update(DeploymentRecord)
        .where(*_deployment_key(blueprint_id, started_at, operation_id), DeploymentRecord.status == "RUNNING")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def increment_blueprint_metrics(
    session: AsyncSession, blueprint_id: str, *, success: bool, completed_at: datetime, edited_at: datetime
) -> int:
    # In-database increments so concurrent completions never lose a count.
    values: dict[str, Any] = {
        "total_deployment_count": Blueprint.total_deployment_count + 1,
        "last_deployment_at": completed_at,
        "last_edit_time": edited_at,
    }
    if success:
        values["total_successful_count"] = Blueprint.total_successful_count + 1
    result = await session.execute(
        update(Blueprint)
        .where(Blueprint.id == blueprint_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def increment_target_metrics(
    session: AsyncSession,
    blueprint_id: str,
    target_id: str,
    *,
    success: bool,
    completed_at: datetime,
    edited_at: datetime,
) -> int:
    values: dict[str, Any] = {
        "deployment_count": DeploymentTarget.deployment_count + 1,
        "last_edit_time": edited_at,
    }
    if success:
        values["successful_deployment_count"] = DeploymentTarget.successful_deployment_count + 1
        values["consecutive_failures"] = 0
        values["last_success_at"] = completed_at
    else:
        values["consecutive_failures"] = DeploymentTarget.consecutive_failures + 1
        values["last_failure_at"] = completed_at
    result = await session.execute(
        update(DeploymentTarget)
        .where(DeploymentTarget.blueprint_id == blueprint_id, DeploymentTarget.target_id == target_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_deployments(
    session: AsyncSession,
    blueprint_id: str,
    *,
    limit: int,
    after: ColumnElement[bool] | None = None,
) -> list[DeploymentRecord]:
    # Newest first; operation_id disambiguates attempts started in the same instant.
    stmt = select(DeploymentRecord).where(DeploymentRecord.blueprint_id == blueprint_id)
    if after is not None:
        stmt = stmt.where(after)
    result = await session.execute(
        stmt.order_by(DeploymentRecord.started_at.desc(), DeploymentRecord.operation_id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def delete_expired_deployments(session: AsyncSession, now: datetime) -> int:
    result = await session.execute(
        delete(DeploymentRecord)
        .where(DeploymentRecord.expires_at < now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
