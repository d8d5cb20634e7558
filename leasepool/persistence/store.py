from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Generic, Literal, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leasepool.core.config import Settings
from leasepool.core.errors import ConcurrentModification, ItemAlreadyExists, UnknownItem
from leasepool.domain.models import Blueprint, DeploymentRecord, DeploymentTarget, Lease
from leasepool.domain.schemas import (
    BlueprintDraft,
    BlueprintPatch,
    DeploymentTargetDraft,
    DeploymentTargetPatch,
    LeaseDraft,
    LeasePatch,
)
from leasepool.domain.thresholds import budget_thresholds_json, duration_thresholds_json
from leasepool.persistence import cursor as cursor_codec
from leasepool.persistence.metadata import (
    check_schema_version,
    check_schema_versions,
    stamp_created,
    stamp_edited,
    validate_record,
)
from leasepool.persistence.repos import blueprints as blueprints_repo
from leasepool.persistence.repos import leases as leases_repo


logger = logging.getLogger(__name__)

T = TypeVar("T")
TerminalStatus = Literal["SUCCEEDED", "FAILED"]

_LEASE_SORT = [cursor_codec.SortField("id", Lease.id)]
_BLUEPRINT_SORT = [cursor_codec.SortField("id", Blueprint.id)]
_DEPLOYMENT_SORT = [
    cursor_codec.SortField("started_at", DeploymentRecord.started_at, "desc", cursor_codec.parse_datetime),
    cursor_codec.SortField("operation_id", DeploymentRecord.operation_id, "desc"),
]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    next_cursor: str | None = None


@dataclass(frozen=True)
class BlueprintWithTargets:
    blueprint: Blueprint
    targets: list[DeploymentTarget] = field(default_factory=list)


def _lease_columns(patch: LeaseDraft | LeasePatch) -> dict[str, Any]:
    # Map validated lease fields onto columns; thresholds are stored as JSON lists.
    values: dict[str, Any] = {}
    for name in patch.model_fields_set if isinstance(patch, LeasePatch) else type(patch).model_fields:
        value = getattr(patch, name)
        if name == "budget_thresholds":
            values["budget_thresholds_json"] = budget_thresholds_json(value or [])
        elif name == "duration_thresholds":
            values["duration_thresholds_json"] = duration_thresholds_json(value or [])
        else:
            values[name] = value
    return values


class RecordStore:
    """Transactional persistence for leases, blueprints and deployment history.

    Every write stamps record metadata and runs in its own transaction. Updates
    that carry an expected version compare it against ``last_edit_time`` inside
    the UPDATE statement, so a stale token never overwrites a newer row.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._clock = clock or _utc_now

    def _now(self) -> datetime:
        return self._clock()

    def _next_version(self, expected: datetime | None) -> datetime:
        # Version tokens must change on every conditioned write, even within one clock tick.
        now = self._now()
        if expected is not None and now <= expected:
            return expected + timedelta(microseconds=1)
        return now

    def _page_size(self, limit: int | None) -> int:
        size = limit or self._settings.default_page_size
        return max(1, min(size, self._settings.max_page_size))

    def _keyset(
        self, token: str | None, *, scope: str, filter_key: str, sort: list[cursor_codec.SortField]
    ) -> Any:
        if not token:
            return None
        payload = cursor_codec.decode_cursor(token, self._settings.cursor_secret)
        values = cursor_codec.validate_cursor_payload(
            payload=payload,
            expected_scope=scope,
            expected_filter=filter_key,
            sort_fields=sort,
        )
        return cursor_codec.build_keyset_filter(sort, values)

    def _page(
        self, rows: list[Any], size: int, *, scope: str, filter_key: str, sort: list[cursor_codec.SortField]
    ) -> Page[Any]:
        # One extra row is fetched to decide whether another page exists.
        items = check_schema_versions(rows[:size])
        if len(rows) <= size:
            return Page(items=items)
        last = items[-1]
        payload = cursor_codec.build_cursor_payload(
            scope=scope,
            filter_key=filter_key,
            sort_fields=sort,
            row_values={field.name: getattr(last, field.name) for field in sort},
        )
        return Page(items=items, next_cursor=cursor_codec.encode_cursor(payload, self._settings.cursor_secret))

    # Leases

    async def create_lease(self, draft: LeaseDraft | dict[str, Any]) -> Lease:
        lease_draft = validate_record(LeaseDraft, draft)
        values = stamp_created(_lease_columns(lease_draft), self._now())
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    lease = await leases_repo.insert_lease(session, values)
            except IntegrityError as exc:
                raise ItemAlreadyExists(f"Lease {lease_draft.id} already exists") from exc
        logger.info("lease_created lease_id=%s status=%s", lease.id, lease.status)
        return lease

    async def get_lease(self, lease_id: str) -> Lease | None:
        async with self._session_factory() as session:
            lease = await leases_repo.get_lease(session, lease_id)
        return check_schema_version(lease) if lease is not None else None

    async def update_lease(
        self,
        lease_id: str,
        patch: LeasePatch | dict[str, Any],
        *,
        expected_version: datetime | None = None,
    ) -> Lease:
        lease_patch = validate_record(LeasePatch, patch)
        values = stamp_edited(_lease_columns(lease_patch), self._next_version(expected_version))
        async with self._session_factory() as session:
            async with session.begin():
                updated = await leases_repo.update_lease(
                    session, lease_id, values, expected_last_edit=expected_version
                )
                current = await leases_repo.get_lease(session, lease_id, refresh=True)
                if current is None:
                    raise UnknownItem(f"Lease {lease_id} not found")
                if updated == 0:
                    raise ConcurrentModification(
                        f"Lease {lease_id} was modified since {expected_version.isoformat() if expected_version else 'read'}"
                    )
        return current

    async def record_lease_check(self, lease_id: str, *, total_cost_accrued: float, checked_at: datetime) -> None:
        # Last writer wins: overlapping monitoring cycles only race on these two fields.
        values = stamp_edited(
            {"total_cost_accrued": total_cost_accrued, "last_checked_date": checked_at},
            self._now(),
        )
        async with self._session_factory() as session:
            async with session.begin():
                updated = await leases_repo.update_lease(session, lease_id, values)
        if updated == 0:
            raise UnknownItem(f"Lease {lease_id} not found")

    async def list_leases(self, *, status: str, cursor: str | None = None, limit: int | None = None) -> Page[Lease]:
        size = self._page_size(limit)
        after = self._keyset(cursor, scope="leases", filter_key=status, sort=_LEASE_SORT)
        async with self._session_factory() as session:
            rows = await leases_repo.list_leases(session, status=status, limit=size + 1, after=after)
        return self._page(rows, size, scope="leases", filter_key=status, sort=_LEASE_SORT)

    async def iter_leases(self, *, status: str) -> AsyncIterator[Lease]:
        # Stream every page of a status scan.
        token: str | None = None
        while True:
            page = await self.list_leases(status=status, cursor=token)
            for lease in page.items:
                yield lease
            if page.next_cursor is None:
                return
            token = page.next_cursor

    # Blueprints

    async def create_blueprint(
        self,
        blueprint: BlueprintDraft | dict[str, Any],
        target: DeploymentTargetDraft | dict[str, Any],
    ) -> BlueprintWithTargets:
        blueprint_draft = validate_record(BlueprintDraft, blueprint)
        target_draft = validate_record(DeploymentTargetDraft, target)
        now = self._now()
        blueprint_values = stamp_created(
            {
                "id": blueprint_draft.id,
                "name": blueprint_draft.name,
                "created_by": blueprint_draft.created_by,
                "tags_json": blueprint_draft.tags,
                "deployment_timeout_minutes": blueprint_draft.deployment_timeout_minutes,
                "region_concurrency_type": blueprint_draft.region_concurrency_type,
                "total_deployment_count": 0,
                "total_successful_count": 0,
            },
            now,
        )
        target_values = stamp_created(
            {
                "target_id": target_draft.target_id,
                "regions_json": list(target_draft.regions),
                "deployment_order": target_draft.deployment_order,
                "max_concurrent_percentage": target_draft.max_concurrent_percentage,
                "failure_tolerance_percentage": target_draft.failure_tolerance_percentage,
                "concurrency_mode": target_draft.concurrency_mode,
                "deployment_count": 0,
                "successful_deployment_count": 0,
                "consecutive_failures": 0,
            },
            now,
        )
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    row, target_row = await blueprints_repo.insert_blueprint(session, blueprint_values, target_values)
            except IntegrityError as exc:
                raise ItemAlreadyExists(f"Blueprint {blueprint_draft.id} already exists") from exc
        logger.info("blueprint_created blueprint_id=%s target_id=%s", row.id, target_row.target_id)
        return BlueprintWithTargets(blueprint=row, targets=[target_row])

    async def get_blueprint(self, blueprint_id: str) -> BlueprintWithTargets | None:
        async with self._session_factory() as session:
            row = await blueprints_repo.get_blueprint(session, blueprint_id)
            if row is None:
                return None
            targets = await blueprints_repo.get_targets(session, blueprint_id)
        return BlueprintWithTargets(blueprint=check_schema_version(row), targets=check_schema_versions(targets))

    async def _apply_blueprint_patch(
        self,
        session: AsyncSession,
        blueprint_id: str,
        patch: BlueprintPatch,
        expected_version: datetime | None,
    ) -> Blueprint:
        values: dict[str, Any] = {}
        for name in patch.model_fields_set:
            values["tags_json" if name == "tags" else name] = getattr(patch, name)
        updated = await blueprints_repo.update_blueprint(
            session,
            blueprint_id,
            stamp_edited(values, self._next_version(expected_version)),
            expected_last_edit=expected_version,
        )
        current = await blueprints_repo.get_blueprint(session, blueprint_id, refresh=True)
        if current is None:
            raise UnknownItem(f"Blueprint {blueprint_id} not found")
        if updated == 0:
            raise ConcurrentModification(f"Blueprint {blueprint_id} was modified concurrently")
        return current

    async def _apply_target_patch(
        self,
        session: AsyncSession,
        blueprint_id: str,
        target_id: str,
        patch: DeploymentTargetPatch,
        expected_version: datetime | None,
    ) -> DeploymentTarget:
        values: dict[str, Any] = {}
        for name in patch.model_fields_set:
            value = getattr(patch, name)
            values["regions_json" if name == "regions" else name] = list(value) if name == "regions" else value
        updated = await blueprints_repo.update_target(
            session,
            blueprint_id,
            target_id,
            stamp_edited(values, self._next_version(expected_version)),
            expected_last_edit=expected_version,
        )
        current = await blueprints_repo.get_target(session, blueprint_id, target_id, refresh=True)
        if current is None:
            raise UnknownItem(f"Deployment target {target_id} of blueprint {blueprint_id} not found")
        if updated == 0:
            raise ConcurrentModification(f"Deployment target {target_id} was modified concurrently")
        return current

    async def update_blueprint(
        self,
        blueprint_id: str,
        patch: BlueprintPatch | dict[str, Any],
        *,
        expected_version: datetime | None = None,
    ) -> Blueprint:
        blueprint_patch = validate_record(BlueprintPatch, patch)
        async with self._session_factory() as session:
            async with session.begin():
                return await self._apply_blueprint_patch(session, blueprint_id, blueprint_patch, expected_version)

    async def update_target(
        self,
        blueprint_id: str,
        target_id: str,
        patch: DeploymentTargetPatch | dict[str, Any],
        *,
        expected_version: datetime | None = None,
    ) -> DeploymentTarget:
        target_patch = validate_record(DeploymentTargetPatch, patch)
        async with self._session_factory() as session:
            async with session.begin():
                return await self._apply_target_patch(
                    session, blueprint_id, target_id, target_patch, expected_version
                )

    async def update_blueprint_with_target(
        self,
        blueprint_id: str,
        blueprint_patch: BlueprintPatch | dict[str, Any],
        target_id: str,
        target_patch: DeploymentTargetPatch | dict[str, Any],
        *,
        expected_blueprint_version: datetime | None = None,
        expected_target_version: datetime | None = None,
    ) -> BlueprintWithTargets:
        # Both rows change or neither does; a failure on either rolls back the pair.
        bp_patch = validate_record(BlueprintPatch, blueprint_patch)
        tg_patch = validate_record(DeploymentTargetPatch, target_patch)
        async with self._session_factory() as session:
            async with session.begin():
                blueprint = await self._apply_blueprint_patch(
                    session, blueprint_id, bp_patch, expected_blueprint_version
                )
                await self._apply_target_patch(session, blueprint_id, target_id, tg_patch, expected_target_version)
                targets = await blueprints_repo.get_targets(session, blueprint_id, refresh=True)
        return BlueprintWithTargets(blueprint=blueprint, targets=targets)

    async def delete_blueprint(self, blueprint_id: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                deleted = await blueprints_repo.delete_blueprint(session, blueprint_id)
                if deleted == 0:
                    raise UnknownItem(f"Blueprint {blueprint_id} not found")
        logger.info("blueprint_deleted blueprint_id=%s", blueprint_id)

    async def list_blueprints(self, *, cursor: str | None = None, limit: int | None = None) -> Page[Blueprint]:
        size = self._page_size(limit)
        after = self._keyset(cursor, scope="blueprints", filter_key="", sort=_BLUEPRINT_SORT)
        async with self._session_factory() as session:
            rows = await blueprints_repo.list_blueprints(session, limit=size + 1, after=after)
        return self._page(rows, size, scope="blueprints", filter_key="", sort=_BLUEPRINT_SORT)

    # Deployment history

    async def record_attempt_start(
        self,
        *,
        blueprint_id: str,
        target_id: str,
        lease_id: str,
        account_id: str,
        operation_id: str,
        started_at: datetime,
    ) -> DeploymentRecord:
        now = self._now()
        values = stamp_created(
            {
                "blueprint_id": blueprint_id,
                "started_at": started_at,
                "operation_id": operation_id,
                "target_id": target_id,
                "lease_id": lease_id,
                "account_id": account_id,
                "status": "RUNNING",
                "expires_at": now + timedelta(days=self._settings.deployment_history_retention_days),
            },
            now,
        )
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    record = await blueprints_repo.insert_deployment(session, values)
            except IntegrityError as exc:
                raise ItemAlreadyExists(f"Deployment {operation_id} already recorded") from exc
        logger.info(
            "deployment_started blueprint_id=%s target_id=%s operation_id=%s",
            blueprint_id,
            target_id,
            operation_id,
        )
        return record

    async def record_attempt_terminal(
        self,
        *,
        blueprint_id: str,
        target_id: str,
        operation_id: str,
        started_at: datetime,
        status: TerminalStatus,
        duration_minutes: float,
        error_type: str | None = None,
        error_message: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Close a RUNNING attempt and roll its outcome into the health counters.

        The deployment row, the blueprint aggregate and the target counters are
        written in one transaction. Returns False when the attempt was already
        terminal, in which case nothing is written.
        """
        now = self._now()
        completed = completed_at or now
        success = status == "SUCCEEDED"
        values = stamp_edited(
            {
                "status": status,
                "completed_at": completed,
                "duration_minutes": duration_minutes,
                "error_type": error_type,
                "error_message": error_message,
            },
            now,
        )
        async with self._session_factory() as session:
            async with session.begin():
                updated = await blueprints_repo.complete_deployment(
                    session, blueprint_id, started_at, operation_id, values
                )
                if updated == 0:
                    existing = await blueprints_repo.get_deployment(session, blueprint_id, started_at, operation_id)
                    if existing is None:
                        raise UnknownItem(f"Deployment {operation_id} of blueprint {blueprint_id} not found")
                    logger.warning(
                        "deployment_already_terminal operation_id=%s status=%s",
                        operation_id,
                        existing.status,
                    )
                    return False
                blueprint_rows = await blueprints_repo.increment_blueprint_metrics(
                    session, blueprint_id, success=success, completed_at=completed, edited_at=now
                )
                target_rows = await blueprints_repo.increment_target_metrics(
                    session, blueprint_id, target_id, success=success, completed_at=completed, edited_at=now
                )
        if blueprint_rows == 0 or target_rows == 0:
            # History outlives blueprint deletion; counters of a deleted blueprint are gone.
            logger.info(
                "deployment_metrics_skipped blueprint_id=%s target_id=%s operation_id=%s",
                blueprint_id,
                target_id,
                operation_id,
            )
        logger.info(
            "deployment_completed blueprint_id=%s operation_id=%s status=%s duration_minutes=%.2f",
            blueprint_id,
            operation_id,
            status,
            duration_minutes,
        )
        return True

    async def get_deployment(
        self, blueprint_id: str, started_at: datetime, operation_id: str
    ) -> DeploymentRecord | None:
        async with self._session_factory() as session:
            record = await blueprints_repo.get_deployment(session, blueprint_id, started_at, operation_id)
        return check_schema_version(record) if record is not None else None

    async def list_deployment_history(
        self, blueprint_id: str, *, cursor: str | None = None, limit: int | None = None
    ) -> Page[DeploymentRecord]:
        size = self._page_size(limit)
        after = self._keyset(cursor, scope="deployments", filter_key=blueprint_id, sort=_DEPLOYMENT_SORT)
        async with self._session_factory() as session:
            rows = await blueprints_repo.list_deployments(session, blueprint_id, limit=size + 1, after=after)
        return self._page(rows, size, scope="deployments", filter_key=blueprint_id, sort=_DEPLOYMENT_SORT)
