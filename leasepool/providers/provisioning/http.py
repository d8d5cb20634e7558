from __future__ import annotations

import logging
import time
from typing import Any, Sequence

import httpx

from leasepool.core.config import Settings
from leasepool.core.errors import (
    OperationInProgressError,
    ProviderConfigError,
    ProvisioningError,
    ProvisioningValidationError,
    ServiceUnavailableError,
    TargetNotFoundError,
    ThrottlingError,
)
from leasepool.providers.provisioning.base import (
    FailedInstance,
    OperationStatus,
    RolloutPolicy,
    TargetDescription,
)
from leasepool.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "provisioning.http"


def _error_body(response: httpx.Response) -> tuple[str | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text or f"HTTP {response.status_code}"
    if not isinstance(body, dict):
        return None, str(body)
    return body.get("code"), str(body.get("message") or f"HTTP {response.status_code}")


def classify_response_error(response: httpx.Response) -> ProvisioningError:
    # Map provisioning API failures onto the retryable/terminal taxonomy.
    status = response.status_code
    code, message = _error_body(response)
    if status == 429 or code == "Throttling":
        return ThrottlingError(message, status_code=status, code=code)
    if status == 503:
        return ServiceUnavailableError(message, status_code=status, code=code)
    if code == "OperationInProgress" or status == 409:
        return OperationInProgressError(message, status_code=status, code=code)
    if status == 404 or code == "TargetNotFound":
        return TargetNotFoundError(message, status_code=status, code=code)
    if status in {400, 422}:
        return ProvisioningValidationError(message, status_code=status, code=code)
    return ProvisioningError(message, status_code=status, code=code)


class HttpProvisioningProvider:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        if not settings.provisioning_api_url:
            raise ProviderConfigError("PROVISIONING_API_URL is required for the http provisioning provider")
        self._settings = settings
        self._base_url = settings.provisioning_api_url.rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._settings.provisioning_api_token:
            headers["Authorization"] = f"Bearer {self._settings.provisioning_api_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        # One HTTP round trip; retries belong to the caller's backoff executor.
        start = time.monotonic()
        try:
            response = await self._get_client().request(
                method, f"{self._base_url}{path}", headers=self._headers(), **kwargs
            )
        except httpx.TransportError as exc:
            record_external_call(
                integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise ServiceUnavailableError(f"Provisioning API unreachable: {exc}", status_code=503) from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            error = classify_response_error(response)
            logger.info(
                "provisioning_request_failed method=%s path=%s status=%s error=%s",
                method,
                path,
                response.status_code,
                type(error).__name__,
            )
            raise error
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        if not response.content:
            return {}
        body = response.json()
        return body if isinstance(body, dict) else {}

    async def describe_target(self, target_id: str) -> TargetDescription:
        body = await self._request("GET", f"/targets/{target_id}")
        return TargetDescription(
            target_id=str(body.get("target_id") or target_id),
            status=str(body.get("status") or "UNKNOWN"),
            permission_model=body.get("permission_model"),
            administration_role=body.get("administration_role"),
            execution_role=body.get("execution_role"),
        )

    async def start_rollout(
        self,
        target_id: str,
        *,
        accounts: Sequence[str],
        regions: Sequence[str],
        policy: RolloutPolicy,
    ) -> str:
        preferences: dict[str, Any] = {
            "region_concurrency_type": policy.region_concurrency_type,
            "max_concurrent_percentage": policy.max_concurrent_percentage,
            "failure_tolerance_percentage": policy.failure_tolerance_percentage,
            "concurrency_mode": policy.concurrency_mode,
        }
        if policy.region_order is not None:
            preferences["region_order"] = list(policy.region_order)
        body = await self._request(
            "POST",
            f"/targets/{target_id}/rollouts",
            json={"accounts": list(accounts), "regions": list(regions), "operation_preferences": preferences},
        )
        operation_id = body.get("operation_id")
        if not operation_id:
            raise ProvisioningError("Provisioning API did not return an operation id")
        return str(operation_id)

    async def poll_operation(self, target_id: str, operation_id: str) -> OperationStatus:
        body = await self._request("GET", f"/targets/{target_id}/operations/{operation_id}")
        return OperationStatus(status=body.get("status"), reason=body.get("status_reason"))

    async def list_failed_instances(
        self, target_id: str, operation_id: str, *, account_id: str
    ) -> list[FailedInstance]:
        body = await self._request(
            "GET",
            f"/targets/{target_id}/operations/{operation_id}/instances",
            params={"account_id": account_id, "detailed_status": "FAILED"},
        )
        return [
            FailedInstance(region=str(item.get("region")), reason=item.get("status_reason"))
            for item in body.get("instances") or []
            if isinstance(item, dict)
        ]
