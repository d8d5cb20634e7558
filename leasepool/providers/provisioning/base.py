from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence


# Operation statuses after which the provisioning API never changes its answer.
TERMINAL_OPERATION_STATUSES = frozenset({"SUCCEEDED", "FAILED", "STOPPED"})


@dataclass(frozen=True)
class RolloutPolicy:
    region_concurrency_type: str = "SEQUENTIAL"
    max_concurrent_percentage: int = 100
    failure_tolerance_percentage: int = 0
    concurrency_mode: str = "STRICT_FAILURE_TOLERANCE"
    # Only sequential rollouts carry an explicit region order.
    region_order: tuple[str, ...] | None = None


@dataclass(frozen=True)
class TargetDescription:
    target_id: str
    status: str
    permission_model: str | None = None
    administration_role: str | None = None
    execution_role: str | None = None


@dataclass(frozen=True)
class OperationStatus:
    status: str | None
    reason: str | None = None


@dataclass(frozen=True)
class FailedInstance:
    region: str
    reason: str | None = None


class ProvisioningProvider(Protocol):
    async def describe_target(self, target_id: str) -> TargetDescription:
        ...

    async def start_rollout(
        self,
        target_id: str,
        *,
        accounts: Sequence[str],
        regions: Sequence[str],
        policy: RolloutPolicy,
    ) -> str:
        ...

    async def poll_operation(self, target_id: str, operation_id: str) -> OperationStatus:
        ...

    async def list_failed_instances(
        self, target_id: str, operation_id: str, *, account_id: str
    ) -> list[FailedInstance]:
        ...
