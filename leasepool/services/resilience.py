from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from leasepool.core.config import Settings
from leasepool.core.errors import ServiceUnavailableError, ThrottlingError
from leasepool.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

Retryable = Callable[[Exception], bool]
Sleep = Callable[[float], Awaitable[None]]


def is_transient_provisioning_error(exc: Exception) -> bool:
    # Throttling, unavailability and per-attempt deadlines are worth another attempt.
    if isinstance(exc, (ThrottlingError, ServiceUnavailableError, TimeoutError)):
        return True
    return getattr(exc, "status_code", None) == 503


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    starting_delay_ms: int = 1000
    # Ceiling for a single delay bound; zero leaves the bound uncapped.
    max_delay_ms: int = 0
    # Per-attempt timeout; zero disables it.
    timeout_ms: int = 0


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.backoff_max_attempts,
        starting_delay_ms=settings.backoff_starting_delay_ms,
        max_delay_ms=settings.backoff_max_delay_ms,
        timeout_ms=settings.ext_call_timeout_ms,
    )


def backoff_bound_ms(policy: RetryPolicy, attempt: int) -> float:
    # The bound doubles after every failed attempt, starting from the first delay.
    bound = policy.starting_delay_ms * (2 ** (attempt - 1))
    if policy.max_delay_ms > 0:
        bound = min(bound, policy.max_delay_ms)
    return float(bound)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Retryable,
    context: dict[str, Any] | None = None,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    # Retry with full-jitter exponential backoff; non-retryable errors escape on first sight.
    attempt = 1
    max_attempts = max(policy.max_attempts, 1)
    while True:
        try:
            if policy.timeout_ms > 0:
                return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - classification is the caller's predicate
            if attempt >= max_attempts or not retryable(exc):
                raise
            delay_s = rng() * backoff_bound_ms(policy, attempt) / 1000.0
            increment_counter("external_retries_total")
            logger.warning(
                "retrying_after_error attempt=%s max_attempts=%s delay_s=%.3f error=%s context=%s",
                attempt,
                max_attempts,
                delay_s,
                type(exc).__name__,
                context or {},
            )
            await sleep(delay_s)
            attempt += 1


class BackoffExecutor:
    """Runs provisioning calls under a fixed retry policy.

    Retryability defaults to :func:`is_transient_provisioning_error`; conflicts,
    missing targets and validation failures surface on the first attempt.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        retryable: Retryable = is_transient_provisioning_error,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._policy = policy
        self._retryable = retryable
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "BackoffExecutor":
        return cls(retry_policy_from_settings(settings), **kwargs)

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        func: Callable[[], Awaitable[T]],
        *,
        context: dict[str, Any] | None = None,
        retryable: Retryable | None = None,
    ) -> T:
        return await retry_async(
            func,
            policy=self._policy,
            retryable=retryable or self._retryable,
            context=context,
            sleep=self._sleep,
            rng=self._rng,
        )
