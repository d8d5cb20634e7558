from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from leasepool.domain.events import (
    BudgetFreezeReason,
    DurationFreezeReason,
    LeaseBudgetExceeded,
    LeaseBudgetThresholdBreached,
    LeaseDurationThresholdBreached,
    LeaseEvent,
    LeaseExpired,
    LeaseFreezeRequested,
    LeaseIdentity,
)
from leasepool.domain.thresholds import BudgetThreshold, DurationThreshold, LeaseSnapshot


logger = logging.getLogger(__name__)


def newly_breached_budget_thresholds(snapshot: LeaseSnapshot, current_cost: float) -> list[BudgetThreshold]:
    # Crossed since the last persisted cost: previous < amount <= current.
    return [
        threshold
        for threshold in snapshot.budget_thresholds
        if snapshot.total_cost_accrued < threshold.amount <= current_cost
    ]


def duration_trigger_instant(expiration_date: datetime, threshold: DurationThreshold) -> datetime:
    return expiration_date - timedelta(hours=threshold.hours_remaining)


def newly_breached_duration_thresholds(snapshot: LeaseSnapshot, now: datetime) -> list[DurationThreshold]:
    # Crossed since the last check: previous_checked < trigger <= now.
    if snapshot.expiration_date is None:
        return []
    previous_checked = snapshot.last_checked_date or snapshot.start_date
    breached: list[DurationThreshold] = []
    for threshold in snapshot.duration_thresholds:
        trigger = duration_trigger_instant(snapshot.expiration_date, threshold)
        if (previous_checked is None or previous_checked < trigger) and trigger <= now:
            breached.append(threshold)
    return breached


def rounded_lease_hours(snapshot: LeaseSnapshot) -> int | None:
    # Half-up rounding of the start-to-expiration span.
    if snapshot.start_date is None or snapshot.expiration_date is None:
        return None
    hours = (snapshot.expiration_date - snapshot.start_date).total_seconds() / 3600.0
    return int(math.floor(hours + 0.5))


def evaluate_lease(snapshot: LeaseSnapshot, current_cost: float, now: datetime) -> list[LeaseEvent]:
    """Return the lifecycle events a lease raises this cycle.

    Terminal conditions (spend at or over ``max_spend``, then expiry) produce a
    single event and short-circuit threshold checks. Otherwise a breached
    FREEZE threshold produces one freeze request, budget axis first, and
    suppresses alerts on both axes. Without a freeze, the largest breached
    budget alert and the most imminent breached duration alert are each
    reported once, so both may fire in the same cycle.
    """
    identity = LeaseIdentity(user_email=snapshot.user_email, uuid=snapshot.lease_id)

    if snapshot.max_spend is not None and current_cost >= snapshot.max_spend:
        logger.info("lease_budget_exceeded lease_id=%s spend=%.2f budget=%.2f", snapshot.lease_id, current_cost, snapshot.max_spend)
        return [
            LeaseBudgetExceeded(
                lease_id=identity,
                account_id=snapshot.account_id,
                budget=snapshot.max_spend,
                total_spend=current_cost,
            )
        ]

    if snapshot.expiration_date is not None and now > snapshot.expiration_date:
        logger.info("lease_expired lease_id=%s expiration=%s", snapshot.lease_id, snapshot.expiration_date.isoformat())
        return [
            LeaseExpired(
                lease_id=identity,
                account_id=snapshot.account_id,
                lease_expiration_date=snapshot.expiration_date,
            )
        ]

    budget_breached = newly_breached_budget_thresholds(snapshot, current_cost)
    duration_breached = newly_breached_duration_thresholds(snapshot, now)

    budget_freeze = next((item for item in budget_breached if item.action == "FREEZE"), None)
    if budget_freeze is not None:
        logger.info(
            "lease_freeze_requested lease_id=%s reason=BudgetExceeded threshold=%.2f spend=%.2f",
            snapshot.lease_id,
            budget_freeze.amount,
            current_cost,
        )
        return [
            LeaseFreezeRequested(
                lease_id=identity,
                account_id=snapshot.account_id,
                reason=BudgetFreezeReason(
                    triggered_budget_threshold=budget_freeze.amount,
                    budget=snapshot.max_spend,
                    total_spend=current_cost,
                ),
            )
        ]

    duration_freeze = next((item for item in duration_breached if item.action == "FREEZE"), None)
    if duration_freeze is not None:
        logger.info(
            "lease_freeze_requested lease_id=%s reason=Expired hours_remaining=%s",
            snapshot.lease_id,
            duration_freeze.hours_remaining,
        )
        return [
            LeaseFreezeRequested(
                lease_id=identity,
                account_id=snapshot.account_id,
                reason=DurationFreezeReason(
                    triggered_duration_threshold=duration_freeze.hours_remaining,
                    lease_duration_in_hours=snapshot.lease_duration_in_hours,
                ),
            )
        ]

    events: list[LeaseEvent] = []
    budget_alerts = [item for item in budget_breached if item.action != "FREEZE"]
    if budget_alerts:
        largest = max(budget_alerts, key=lambda item: item.amount)
        events.append(
            LeaseBudgetThresholdBreached(
                lease_id=identity,
                account_id=snapshot.account_id,
                budget=snapshot.max_spend,
                budget_threshold_triggered=largest.amount,
                total_spend=current_cost,
                action_requested=largest.action,
            )
        )

    duration_alerts = [item for item in duration_breached if item.action != "FREEZE"]
    if duration_alerts:
        most_imminent = min(duration_alerts, key=lambda item: item.hours_remaining)
        events.append(
            LeaseDurationThresholdBreached(
                lease_id=identity,
                account_id=snapshot.account_id,
                triggered_duration_threshold=most_imminent.hours_remaining,
                lease_duration_in_hours=rounded_lease_hours(snapshot),
                action_requested=most_imminent.action,
            )
        )

    if events:
        logger.info("lease_thresholds_breached lease_id=%s events=%s", snapshot.lease_id, [event.type for event in events])
    return events
