from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Protocol


@dataclass(frozen=True)
class CostReport:
    # Cumulative spend per account since the lease start date it was requested with.
    costs: Mapping[str, float] = field(default_factory=dict)

    def has_cost(self, account_id: str) -> bool:
        return account_id in self.costs

    def get_cost(self, account_id: str, default: float = 0.0) -> float:
        return float(self.costs.get(account_id, default))

    def total_cost(self) -> float:
        return float(sum(self.costs.values()))


class CostProvider(Protocol):
    async def get_cost_for_leases(
        self, accounts_with_start_dates: Mapping[str, datetime], as_of: datetime
    ) -> CostReport:
        ...
