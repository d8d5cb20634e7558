from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Sequence

import httpx
from pydantic import BaseModel

from leasepool.core.config import Settings
from leasepool.core.errors import EventPublishError, ProviderConfigError
from leasepool.providers.events.base import event_envelope
from leasepool.services.resilience import RetryPolicy, retry_async
from leasepool.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "events.webhook"
# Receivers accept at most this many entries per request.
MAX_BATCH_SIZE = 10


def build_event_signature(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _retryable(exc: Exception) -> bool:
    # TimeoutError comes from the per-attempt wait_for deadline.
    if isinstance(exc, (TimeoutError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status == 429 or status >= 500)


class WebhookEventPublisher:
    """Posts signed event batches to the event bus endpoint.

    Delivery is at least once: a batch that fails after partial acceptance is
    retried whole, so receivers dedupe on the event id.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        if not settings.event_bus_url or not settings.event_bus_secret:
            raise ProviderConfigError("EVENT_BUS_URL and EVENT_BUS_SECRET are required for the webhook event bus")
        self._settings = settings
        self._url = settings.event_bus_url
        self._secret = settings.event_bus_secret
        self._client = client
        self._policy = RetryPolicy(
            max_attempts=settings.backoff_max_attempts,
            starting_delay_ms=settings.backoff_starting_delay_ms,
            max_delay_ms=settings.backoff_max_delay_ms,
            timeout_ms=settings.ext_call_timeout_ms,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def _send_batch(self, batch: Sequence[BaseModel]) -> None:
        entries = [event_envelope(event, source=self._settings.event_source) for event in batch]
        body = json.dumps({"entries": entries}, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Leasepool-Signature": build_event_signature(self._secret, body),
        }
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(self._url, content=body, headers=headers)
            if response.status_code == 429 or response.status_code >= 500:
                error = EventPublishError(f"Event bus responded with status {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        start = time.monotonic()
        try:
            response = await retry_async(
                _call, policy=self._policy, retryable=_retryable, context={"integration": _INTEGRATION}
            )
        except (TimeoutError, httpx.HTTPError, EventPublishError) as exc:
            record_external_call(
                integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise EventPublishError(f"Failed to publish {len(batch)} events") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            raise EventPublishError(f"Event bus rejected batch with status {response.status_code}")
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)

    async def publish(self, events: Sequence[BaseModel]) -> None:
        for offset in range(0, len(events), MAX_BATCH_SIZE):
            batch = events[offset : offset + MAX_BATCH_SIZE]
            await self._send_batch(batch)
            increment_counter("events_published_total", len(batch))
        if events:
            logger.info("events_published count=%s", len(events))
