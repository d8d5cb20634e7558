from __future__ import annotations

import logging

from leasepool.core.errors import ProvisioningError
from leasepool.providers.provisioning.base import TERMINAL_OPERATION_STATUSES
from leasepool.services.deployments.actions import CheckStatusAction, CheckStatusResult
from leasepool.services.deployments.context import DeploymentContext, elapsed_minutes
from leasepool.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Stack instance deployment failed"


def timeout_message(timeout_minutes: float) -> str:
    # Render whole-minute timeouts without a trailing ".0".
    value = int(timeout_minutes) if float(timeout_minutes).is_integer() else timeout_minutes
    return f"Deployment exceeded {value} minute timeout"


async def detailed_failure_message(
    ctx: DeploymentContext, action: CheckStatusAction, status_reason: str | None
) -> str:
    """Build ``"region: reason; region: reason"`` from the failed instances.

    Falls back to the operation's status reason, then a generic message, when
    the lookup fails or returns nothing.
    """
    try:
        instances = await ctx.backoff.run(
            lambda: ctx.provisioning.list_failed_instances(
                action.target_id, action.operation_id, account_id=action.account_id
            ),
            context={"operation_id": action.operation_id, "target_id": action.target_id},
        )
    except Exception as exc:  # noqa: BLE001 - detail lookup is best effort
        logger.warning(
            "deployment_failure_detail_unavailable operation_id=%s error=%s",
            action.operation_id,
            type(exc).__name__,
        )
        return status_reason or GENERIC_FAILURE_MESSAGE
    if instances:
        return "; ".join(f"{item.region}: {item.reason or 'Unknown error'}" for item in instances)
    return status_reason or GENERIC_FAILURE_MESSAGE


async def check_deployment_status(ctx: DeploymentContext, action: CheckStatusAction) -> CheckStatusResult:
    elapsed = elapsed_minutes(action.execution_start_time, ctx.clock())

    # Timeout is inclusive and is decided without asking the provisioning API.
    if elapsed >= action.deployment_timeout_minutes:
        message = timeout_message(action.deployment_timeout_minutes)
        logger.warning(
            "deployment_timed_out operation_id=%s elapsed_minutes=%.2f timeout_minutes=%s",
            action.operation_id,
            elapsed,
            action.deployment_timeout_minutes,
        )
        await ctx.store.record_attempt_terminal(
            blueprint_id=action.blueprint_id,
            target_id=action.target_id,
            operation_id=action.operation_id,
            started_at=action.execution_start_time,
            status="FAILED",
            duration_minutes=elapsed,
            error_type="DeploymentTimeout",
            error_message=message,
        )
        increment_counter("deployments_timed_out_total")
        return CheckStatusResult(
            operation_id=action.operation_id,
            status="FAILED",
            error_message=message,
            error_type="DeploymentTimeout",
        )

    operation = await ctx.backoff.run(
        lambda: ctx.provisioning.poll_operation(action.target_id, action.operation_id),
        context={"operation_id": action.operation_id, "target_id": action.target_id},
    )
    if not operation.status:
        raise ProvisioningError("Provisioning API did not return operation status")

    is_complete = operation.status in TERMINAL_OPERATION_STATUSES
    logger.info(
        "deployment_status_checked operation_id=%s status=%s complete=%s",
        action.operation_id,
        operation.status,
        is_complete,
    )
    if not is_complete:
        return CheckStatusResult(operation_id=action.operation_id, status="IN_PROGRESS")

    final_status = "SUCCEEDED" if operation.status == "SUCCEEDED" else "FAILED"
    error_type: str | None = None
    error_message = ""
    if final_status == "FAILED":
        error_type = "DeploymentFailed"
        error_message = await detailed_failure_message(ctx, action, operation.reason)

    await ctx.store.record_attempt_terminal(
        blueprint_id=action.blueprint_id,
        target_id=action.target_id,
        operation_id=action.operation_id,
        started_at=action.execution_start_time,
        status=final_status,
        duration_minutes=elapsed_minutes(action.execution_start_time, ctx.clock()),
        error_type=error_type,
        error_message=error_message or None,
    )
    increment_counter(f"deployments_completed_total.{final_status.lower()}")
    return CheckStatusResult(
        operation_id=action.operation_id,
        status=final_status,
        error_message=error_message,
        error_type=error_type,
    )
