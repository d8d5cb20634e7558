from __future__ import annotations

from datetime import datetime
from typing import Mapping

from leasepool.providers.costs.base import CostReport


class FakeCostProvider:
    def __init__(self, costs: Mapping[str, float] | None = None) -> None:
        # Fixed per-account spend keeps monitoring runs deterministic.
        self.costs: dict[str, float] = dict(costs or {})
        self.requests: list[tuple[dict[str, datetime], datetime]] = []

    async def get_cost_for_leases(
        self, accounts_with_start_dates: Mapping[str, datetime], as_of: datetime
    ) -> CostReport:
        self.requests.append((dict(accounts_with_start_dates), as_of))
        return CostReport(
            costs={account_id: self.costs[account_id] for account_id in accounts_with_start_dates if account_id in self.costs}
        )
