from __future__ import annotations

import httpx

from leasepool.core.config import Settings
from leasepool.core.errors import ProviderConfigError
from leasepool.providers.events.base import EventPublisher
from leasepool.providers.events.fake import FakeEventPublisher
from leasepool.providers.events.log import LogEventPublisher
from leasepool.providers.events.webhook import WebhookEventPublisher


def get_event_publisher(settings: Settings, client: httpx.AsyncClient | None = None) -> EventPublisher:
    provider = (settings.event_bus_provider or "").lower()
    if provider == "fake":
        return FakeEventPublisher()
    if provider == "log":
        return LogEventPublisher(settings)
    if provider == "webhook":
        return WebhookEventPublisher(settings, client=client)
    raise ProviderConfigError(f"Unsupported event bus provider: {provider}")
