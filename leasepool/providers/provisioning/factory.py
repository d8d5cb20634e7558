from __future__ import annotations

import httpx

from leasepool.core.config import Settings
from leasepool.core.errors import ProviderConfigError
from leasepool.providers.provisioning.base import ProvisioningProvider
from leasepool.providers.provisioning.fake import FakeProvisioningProvider
from leasepool.providers.provisioning.http import HttpProvisioningProvider


def get_provisioning_provider(settings: Settings, client: httpx.AsyncClient | None = None) -> ProvisioningProvider:
    provider = (settings.provisioning_provider or "").lower()
    if provider == "fake":
        return FakeProvisioningProvider()
    if provider == "http":
        return HttpProvisioningProvider(settings, client=client)
    raise ProviderConfigError(f"Unsupported provisioning provider: {provider}")
