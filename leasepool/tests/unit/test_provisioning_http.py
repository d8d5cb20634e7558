from __future__ import annotations

import json

import httpx
import pytest

from leasepool.core.errors import (
    OperationInProgressError,
    ProviderConfigError,
    ProvisioningError,
    ProvisioningValidationError,
    ServiceUnavailableError,
    TargetNotFoundError,
    ThrottlingError,
)
from leasepool.providers.provisioning.base import RolloutPolicy
from leasepool.providers.provisioning.http import HttpProvisioningProvider, classify_response_error
from leasepool.services.telemetry import external_latency_by_integration


def _provider(settings, handler) -> HttpProvisioningProvider:
    configured = settings.model_copy(
        update={"provisioning_api_url": "https://provisioning.test/v1/", "provisioning_api_token": "tok"}
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpProvisioningProvider(configured, client=client)


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (429, {"code": "Throttling"}, ThrottlingError),
        (400, {"code": "Throttling", "message": "Rate exceeded"}, ThrottlingError),
        (503, {}, ServiceUnavailableError),
        (409, {"code": "OperationInProgress"}, OperationInProgressError),
        (404, {"message": "no such target"}, TargetNotFoundError),
        (422, {"message": "bad regions"}, ProvisioningValidationError),
        (500, {"message": "boom"}, ProvisioningError),
    ],
)
def test_classify_response_error(status: int, body: dict, expected: type) -> None:
    response = httpx.Response(status, json=body)
    error = classify_response_error(response)
    assert type(error) is expected
    assert error.status_code == status


def test_requires_base_url(settings) -> None:
    with pytest.raises(ProviderConfigError):
        HttpProvisioningProvider(settings)


@pytest.mark.asyncio
async def test_start_rollout_sends_sequential_region_order(settings) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"operation_id": "op-123"})

    provider = _provider(settings, handler)
    operation_id = await provider.start_rollout(
        "stackset-web",
        accounts=["111122223333"],
        regions=["us-east-1", "eu-west-1"],
        policy=RolloutPolicy(region_concurrency_type="SEQUENTIAL", region_order=("us-east-1", "eu-west-1")),
    )

    assert operation_id == "op-123"
    assert seen["url"] == "https://provisioning.test/v1/targets/stackset-web/rollouts"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"]["accounts"] == ["111122223333"]
    assert seen["body"]["operation_preferences"]["region_order"] == ["us-east-1", "eu-west-1"]
    assert seen["body"]["operation_preferences"]["concurrency_mode"] == "STRICT_FAILURE_TOLERANCE"
    assert "provisioning.http" in external_latency_by_integration(60)


@pytest.mark.asyncio
async def test_parallel_rollout_omits_region_order(settings) -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"operation_id": "op-1"})

    provider = _provider(settings, handler)
    await provider.start_rollout(
        "stackset-web",
        accounts=["111122223333"],
        regions=["us-east-1"],
        policy=RolloutPolicy(region_concurrency_type="PARALLEL"),
    )

    assert "region_order" not in seen["body"]["operation_preferences"]


@pytest.mark.asyncio
async def test_poll_and_failed_instances(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/instances"):
            assert request.url.params["detailed_status"] == "FAILED"
            assert request.url.params["account_id"] == "111122223333"
            return httpx.Response(
                200,
                json={
                    "instances": [
                        {"region": "us-east-1", "status_reason": "Template error"},
                        {"region": "eu-west-1"},
                    ]
                },
            )
        return httpx.Response(200, json={"status": "FAILED", "status_reason": "Failure tolerance exceeded"})

    provider = _provider(settings, handler)
    status = await provider.poll_operation("stackset-web", "op-1")
    instances = await provider.list_failed_instances("stackset-web", "op-1", account_id="111122223333")

    assert status.status == "FAILED"
    assert status.reason == "Failure tolerance exceeded"
    assert [(item.region, item.reason) for item in instances] == [
        ("us-east-1", "Template error"),
        ("eu-west-1", None),
    ]


@pytest.mark.asyncio
async def test_transport_error_maps_to_service_unavailable(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(settings, handler)
    with pytest.raises(ServiceUnavailableError) as excinfo:
        await provider.describe_target("stackset-web")
    assert excinfo.value.status_code == 503
