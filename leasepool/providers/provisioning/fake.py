from __future__ import annotations

from collections import defaultdict, deque
from typing import Any, Sequence
from uuid import uuid4

from leasepool.core.errors import TargetNotFoundError
from leasepool.providers.provisioning.base import (
    FailedInstance,
    OperationStatus,
    RolloutPolicy,
    TargetDescription,
)


class FakeProvisioningProvider:
    """In-process provisioning API for local runs and tests.

    Operations succeed on the first poll unless a status script is queued.
    Errors queued per method are raised in order before the call is served.
    """

    def __init__(self, targets: dict[str, TargetDescription] | None = None) -> None:
        self.targets: dict[str, TargetDescription] = dict(targets or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.operation_statuses: dict[str, deque[OperationStatus]] = defaultdict(deque)
        self.failed_instances: dict[str, list[FailedInstance]] = {}
        self._errors: dict[str, deque[Exception]] = defaultdict(deque)

    def add_target(self, target_id: str, *, status: str = "ACTIVE", permission_model: str = "SELF_MANAGED") -> None:
        self.targets[target_id] = TargetDescription(target_id=target_id, status=status, permission_model=permission_model)

    def fail_next(self, method: str, *errors: Exception) -> None:
        self._errors[method].extend(errors)

    def script_operation(self, operation_id: str, *statuses: OperationStatus) -> None:
        self.operation_statuses[operation_id].extend(statuses)

    def calls_to(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def _record(self, method: str, **kwargs: Any) -> None:
        self.calls.append((method, kwargs))
        if self._errors[method]:
            raise self._errors[method].popleft()

    async def describe_target(self, target_id: str) -> TargetDescription:
        self._record("describe_target", target_id=target_id)
        target = self.targets.get(target_id)
        if target is None:
            raise TargetNotFoundError(f"Target {target_id} not found", status_code=404, code="TargetNotFound")
        return target

    async def start_rollout(
        self,
        target_id: str,
        *,
        accounts: Sequence[str],
        regions: Sequence[str],
        policy: RolloutPolicy,
    ) -> str:
        self._record("start_rollout", target_id=target_id, accounts=list(accounts), regions=list(regions), policy=policy)
        if target_id not in self.targets:
            raise TargetNotFoundError(f"Target {target_id} not found", status_code=404, code="TargetNotFound")
        return f"op-{uuid4()}"

    async def poll_operation(self, target_id: str, operation_id: str) -> OperationStatus:
        self._record("poll_operation", target_id=target_id, operation_id=operation_id)
        script = self.operation_statuses[operation_id]
        if not script:
            return OperationStatus(status="SUCCEEDED")
        # The last scripted status sticks once the script runs out.
        return script.popleft() if len(script) > 1 else script[0]

    async def list_failed_instances(
        self, target_id: str, operation_id: str, *, account_id: str
    ) -> list[FailedInstance]:
        self._record("list_failed_instances", target_id=target_id, operation_id=operation_id, account_id=account_id)
        return list(self.failed_instances.get(operation_id, []))
