from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from leasepool.core.errors import CostServiceError
from leasepool.providers.costs.factory import get_cost_provider
from leasepool.providers.costs.fake import FakeCostProvider
from leasepool.providers.costs.http import HttpCostProvider


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _provider(settings, handler) -> HttpCostProvider:
    configured = settings.model_copy(update={"cost_api_url": "https://costs.test"})
    return HttpCostProvider(configured, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_batched_cost_request(settings) -> None:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"costs": {"111122223333": 12.5, "444455556666": "3"}})

    report = await _provider(settings, handler).get_cost_for_leases(
        {"444455556666": START, "111122223333": START}, NOW
    )

    assert len(requests) == 1
    assert [item["account_id"] for item in requests[0]["accounts"]] == ["111122223333", "444455556666"]
    assert requests[0]["as_of"] == NOW.isoformat()
    assert report.get_cost("111122223333") == 12.5
    assert report.get_cost("444455556666") == 3.0
    assert report.total_cost() == 15.5


@pytest.mark.asyncio
async def test_cost_request_retries_attempt_deadline(settings) -> None:
    calls = {"count": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            await asyncio.sleep(1)
        return httpx.Response(200, json={"costs": {"111122223333": 4.0}})

    provider = _provider(settings.model_copy(update={"ext_call_timeout_ms": 50}), handler)

    report = await provider.get_cost_for_leases({"111122223333": START}, NOW)

    assert calls["count"] == 2
    assert report.get_cost("111122223333") == 4.0


@pytest.mark.asyncio
async def test_cost_request_retries_server_errors(settings) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(502)
        return httpx.Response(200, json={"costs": {}})

    report = await _provider(settings, handler).get_cost_for_leases({"111122223333": START}, NOW)

    assert calls["count"] == 2
    assert report.has_cost("111122223333") is False


@pytest.mark.asyncio
async def test_cost_request_client_error_is_not_retried(settings) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(403)

    with pytest.raises(CostServiceError):
        await _provider(settings, handler).get_cost_for_leases({"111122223333": START}, NOW)
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_empty_request_skips_the_call(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    report = await _provider(settings, handler).get_cost_for_leases({}, NOW)
    assert report.costs == {}


def test_factory_selects_fake(settings) -> None:
    assert isinstance(get_cost_provider(settings), FakeCostProvider)
