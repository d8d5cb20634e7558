from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from leasepool.core.errors import RecordValidationError
from leasepool.domain.events import ThresholdAction
from leasepool.domain.models import Lease


_ACTIONS = ("ALERT", "FREEZE")


@dataclass(frozen=True)
class BudgetThreshold:
    amount: float
    action: ThresholdAction


@dataclass(frozen=True)
class DurationThreshold:
    hours_remaining: float
    action: ThresholdAction


def _action(raw: Any) -> ThresholdAction:
    if raw not in _ACTIONS:
        raise RecordValidationError(f"Unsupported threshold action: {raw!r}")
    return raw


def parse_budget_thresholds(raw: list[dict[str, Any]] | None) -> tuple[BudgetThreshold, ...]:
    # Keep insertion order; evaluation relies on it only for ties.
    return tuple(
        BudgetThreshold(amount=float(item["amount"]), action=_action(item.get("action")))
        for item in raw or []
    )


def parse_duration_thresholds(raw: list[dict[str, Any]] | None) -> tuple[DurationThreshold, ...]:
    return tuple(
        DurationThreshold(
            hours_remaining=float(item["hours_remaining"]),
            action=_action(item.get("action")),
        )
        for item in raw or []
    )


def budget_thresholds_json(thresholds: list[BudgetThreshold] | tuple[BudgetThreshold, ...]) -> list[dict[str, Any]]:
    return [{"amount": item.amount, "action": item.action} for item in thresholds]


def duration_thresholds_json(
    thresholds: list[DurationThreshold] | tuple[DurationThreshold, ...],
) -> list[dict[str, Any]]:
    return [{"hours_remaining": item.hours_remaining, "action": item.action} for item in thresholds]


@dataclass(frozen=True)
class LeaseSnapshot:
    """State of a lease as last persisted, the input to threshold evaluation."""

    lease_id: str
    user_email: str
    account_id: str
    start_date: datetime | None
    expiration_date: datetime | None
    lease_duration_in_hours: float | None
    max_spend: float | None
    budget_thresholds: tuple[BudgetThreshold, ...]
    duration_thresholds: tuple[DurationThreshold, ...]
    total_cost_accrued: float
    last_checked_date: datetime | None

    @classmethod
    def from_row(cls, row: Lease) -> "LeaseSnapshot":
        if not row.account_id:
            raise RecordValidationError(f"Lease {row.id} has no account assigned")
        return cls(
            lease_id=row.id,
            user_email=row.user_email,
            account_id=row.account_id,
            start_date=row.start_date,
            expiration_date=row.expiration_date,
            lease_duration_in_hours=row.lease_duration_in_hours,
            max_spend=row.max_spend,
            budget_thresholds=parse_budget_thresholds(row.budget_thresholds_json),
            duration_thresholds=parse_duration_thresholds(row.duration_thresholds_json),
            total_cost_accrued=row.total_cost_accrued or 0.0,
            last_checked_date=row.last_checked_date,
        )
