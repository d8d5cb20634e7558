from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Mapping

import httpx

from leasepool.core.config import Settings
from leasepool.core.errors import CostServiceError, ProviderConfigError
from leasepool.providers.costs.base import CostReport
from leasepool.services.resilience import RetryPolicy, retry_async
from leasepool.services.telemetry import record_external_call


_INTEGRATION = "costs.http"


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _retryable(exc: Exception) -> bool:
    # TimeoutError comes from the per-attempt wait_for deadline.
    if isinstance(exc, (TimeoutError, httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status == 429 or status >= 500)


class HttpCostProvider:
    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        if not settings.cost_api_url:
            raise ProviderConfigError("COST_API_URL is required for the http cost provider")
        self._settings = settings
        self._url = f"{settings.cost_api_url.rstrip('/')}/cost-reports"
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

    async def get_cost_for_leases(
        self, accounts_with_start_dates: Mapping[str, datetime], as_of: datetime
    ) -> CostReport:
        # One batched request covers every monitored account.
        if not accounts_with_start_dates:
            return CostReport()
        payload = {
            "as_of": _iso(as_of),
            "accounts": [
                {"account_id": account_id, "start_date": _iso(start)}
                for account_id, start in sorted(accounts_with_start_dates.items())
            ],
        }
        headers = {"Accept": "application/json"}
        if self._settings.cost_api_token:
            headers["Authorization"] = f"Bearer {self._settings.cost_api_token}"
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(self._url, json=payload, headers=headers)
            if response.status_code == 429 or response.status_code >= 500:
                error = CostServiceError(f"Cost service error: {response.status_code}")
                setattr(error, "status_code", response.status_code)
                raise error
            return response

        start = time.monotonic()
        try:
            response = await retry_async(
                _call, policy=self._policy, retryable=_retryable, context={"integration": _INTEGRATION}
            )
        except (TimeoutError, httpx.HTTPError, CostServiceError) as exc:
            record_external_call(
                integration=_INTEGRATION, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise CostServiceError("Cost service request failed") from exc
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=False)
            raise CostServiceError(f"Cost service error: {response.status_code}")
        record_external_call(integration=_INTEGRATION, latency_ms=latency_ms, success=True)
        try:
            body = response.json()
            costs = {str(account_id): float(amount) for account_id, amount in (body.get("costs") or {}).items()}
        except (ValueError, AttributeError, TypeError) as exc:
            raise CostServiceError("Cost service returned an unreadable report") from exc
        return CostReport(costs=costs)
