from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from leasepool.core.config import Settings
from leasepool.domain.events import LeaseEvent
from leasepool.domain.models import MONITORED_LEASE_STATUSES
from leasepool.domain.thresholds import LeaseSnapshot
from leasepool.persistence.store import RecordStore
from leasepool.providers.costs.base import CostProvider
from leasepool.providers.events.base import EventPublisher
from leasepool.services.costs.thresholds import evaluate_lease
from leasepool.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MonitoringSummary:
    leases_scanned: int
    events_published: int
    leases_persisted: int
    evaluation_failures: int
    persistence_failures: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class LeaseMonitoringCycle:
    """One batch pass over every Active and Frozen lease.

    Events for the whole cycle are published before any lease is persisted, so
    a crash in between repeats events on the next cycle instead of losing them.
    Evaluation and persistence failures are isolated per lease; a failed cost
    fetch or publish aborts the cycle with nothing persisted.
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        cost_provider: CostProvider,
        publisher: EventPublisher,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._costs = cost_provider
        self._publisher = publisher
        self._clock = clock or _utc_now

    async def _load_snapshots(self) -> tuple[list[LeaseSnapshot], int, int]:
        scanned = 0
        failures = 0
        snapshots: list[LeaseSnapshot] = []
        for status in MONITORED_LEASE_STATUSES:
            async for lease in self._store.iter_leases(status=status):
                scanned += 1
                try:
                    snapshots.append(LeaseSnapshot.from_row(lease))
                except Exception as exc:  # noqa: BLE001 - one bad lease must not stop the scan
                    failures += 1
                    increment_counter("lease_monitoring_evaluation_failures_total")
                    logger.warning("lease_snapshot_failed lease_id=%s", lease.id, exc_info=exc)
        return snapshots, scanned, failures

    async def run(self) -> MonitoringSummary:
        now = self._clock()
        snapshots, scanned, evaluation_failures = await self._load_snapshots()
        # Cost accrues from lease start, so each account is queried from its own start date.
        accounts_with_start_dates = {
            snapshot.account_id: snapshot.start_date or now for snapshot in snapshots
        }
        logger.info("lease_monitoring_started leases=%s accounts=%s", scanned, len(accounts_with_start_dates))
        report = await self._costs.get_cost_for_leases(accounts_with_start_dates, now)

        events: list[LeaseEvent] = []
        evaluated: list[tuple[LeaseSnapshot, float]] = []
        for snapshot in snapshots:
            if report.has_cost(snapshot.account_id):
                current_cost = report.get_cost(snapshot.account_id)
            else:
                logger.warning(
                    "lease_cost_missing lease_id=%s account_id=%s", snapshot.lease_id, snapshot.account_id
                )
                current_cost = snapshot.total_cost_accrued
            try:
                lease_events = evaluate_lease(snapshot, current_cost, now)
            except Exception as exc:  # noqa: BLE001 - skip persistence so detection retries next cycle
                evaluation_failures += 1
                increment_counter("lease_monitoring_evaluation_failures_total")
                logger.warning("lease_evaluation_failed lease_id=%s", snapshot.lease_id, exc_info=exc)
                continue
            events.extend(lease_events)
            evaluated.append((snapshot, current_cost))

        if events:
            await self._publisher.publish(events)
        increment_counter("lease_monitoring_events_total", len(events))

        persisted = 0
        persistence_failures = 0
        for snapshot, current_cost in evaluated:
            try:
                await self._store.record_lease_check(
                    snapshot.lease_id, total_cost_accrued=current_cost, checked_at=now
                )
            except Exception as exc:  # noqa: BLE001 - best effort per lease
                persistence_failures += 1
                increment_counter("lease_monitoring_persistence_failures_total")
                logger.warning("lease_persist_failed lease_id=%s", snapshot.lease_id, exc_info=exc)
                continue
            persisted += 1
            logger.debug(
                "lease_cost_updated lease_id=%s account_id=%s previous=%.2f current=%.2f",
                snapshot.lease_id,
                snapshot.account_id,
                snapshot.total_cost_accrued,
                current_cost,
            )

        summary = MonitoringSummary(
            leases_scanned=scanned,
            events_published=len(events),
            leases_persisted=persisted,
            evaluation_failures=evaluation_failures,
            persistence_failures=persistence_failures,
        )
        logger.info(
            "lease_monitoring_completed scanned=%s events=%s persisted=%s evaluation_failures=%s persistence_failures=%s",
            summary.leases_scanned,
            summary.events_published,
            summary.leases_persisted,
            summary.evaluation_failures,
            summary.persistence_failures,
        )
        return summary
