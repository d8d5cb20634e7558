from __future__ import annotations

import httpx

from leasepool.core.config import Settings
from leasepool.core.errors import ProviderConfigError
from leasepool.providers.costs.base import CostProvider
from leasepool.providers.costs.fake import FakeCostProvider
from leasepool.providers.costs.http import HttpCostProvider


def get_cost_provider(settings: Settings, client: httpx.AsyncClient | None = None) -> CostProvider:
    provider = (settings.cost_provider or "").lower()
    if provider == "fake":
        return FakeCostProvider()
    if provider == "http":
        return HttpCostProvider(settings, client=client)
    raise ProviderConfigError(f"Unsupported cost provider: {provider}")
