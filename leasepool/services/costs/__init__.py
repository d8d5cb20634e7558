from __future__ import annotations

# Re-export lease cost monitoring for centralized imports.

from leasepool.services.costs.monitoring import LeaseMonitoringCycle, MonitoringSummary
from leasepool.services.costs.thresholds import (
    evaluate_lease,
    newly_breached_budget_thresholds,
    newly_breached_duration_thresholds,
)

__all__ = [
    "LeaseMonitoringCycle",
    "MonitoringSummary",
    "evaluate_lease",
    "newly_breached_budget_thresholds",
    "newly_breached_duration_thresholds",
]
