from __future__ import annotations

import asyncio
import hashlib
import hmac
import json

import httpx
import pytest

from leasepool.core.errors import EventPublishError, ProviderConfigError
from leasepool.domain.events import LeaseExpired, LeaseIdentity
from leasepool.providers.events.factory import get_event_publisher
from leasepool.providers.events.log import LogEventPublisher
from leasepool.providers.events.webhook import WebhookEventPublisher, build_event_signature


def _event(index: int) -> LeaseExpired:
    return LeaseExpired(
        lease_id=LeaseIdentity(user_email="dev@example.com", uuid=f"lease-{index}"),
        account_id="111122223333",
        lease_expiration_date="2026-03-02T12:00:00Z",
    )


def _publisher(settings, handler) -> WebhookEventPublisher:
    configured = settings.model_copy(
        update={"event_bus_url": "https://events.test/ingest", "event_bus_secret": "hook-secret"}
    )
    return WebhookEventPublisher(configured, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_build_event_signature_matches_hmac() -> None:
    payload = b'{"entries":[]}'
    expected = hmac.new(b"hook-secret", payload, hashlib.sha256).hexdigest()
    assert build_event_signature("hook-secret", payload) == expected


@pytest.mark.asyncio
async def test_webhook_batches_and_signs(settings) -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Leasepool-Signature"] == build_event_signature("hook-secret", request.content)
        bodies.append(json.loads(request.content))
        return httpx.Response(202)

    events = [_event(index) for index in range(12)]
    await _publisher(settings, handler).publish(events)

    assert [len(body["entries"]) for body in bodies] == [10, 2]
    entry = bodies[0]["entries"][0]
    assert entry["id"] == events[0].event_id
    assert entry["source"] == "leasepool"
    assert entry["detail_type"] == "LeaseExpired"
    assert entry["detail"]["lease_id"]["uuid"] == "lease-0"


@pytest.mark.asyncio
async def test_webhook_rejection_raises(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400)

    with pytest.raises(EventPublishError):
        await _publisher(settings, handler).publish([_event(0)])


@pytest.mark.asyncio
async def test_webhook_attempt_deadline_surfaces_as_publish_error(settings) -> None:
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        await asyncio.sleep(1)
        return httpx.Response(200)

    publisher = _publisher(settings.model_copy(update={"ext_call_timeout_ms": 20}), handler)

    with pytest.raises(EventPublishError):
        await publisher.publish([_event(0)])
    assert calls["count"] == settings.backoff_max_attempts


def test_factory_requires_webhook_configuration(settings) -> None:
    with pytest.raises(ProviderConfigError):
        get_event_publisher(settings.model_copy(update={"event_bus_provider": "webhook"}))
    assert isinstance(
        get_event_publisher(settings.model_copy(update={"event_bus_provider": "log"})), LogEventPublisher
    )
