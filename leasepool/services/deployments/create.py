from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from leasepool.core.errors import (
    OperationInProgressError,
    ProvisioningValidationError,
    TargetNotFoundError,
)
from leasepool.providers.provisioning.base import RolloutPolicy, TargetDescription
from leasepool.services.deployments.actions import CreateAction, CreateResult
from leasepool.services.deployments.context import DeploymentContext
from leasepool.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OPERATION_IN_PROGRESS_MESSAGE = (
    "Another operation is in progress on this StackSet. "
    "Enable managed execution on your StackSet to allow concurrent deployments."
)


def validate_target_for_deployment(target: TargetDescription) -> TargetDescription:
    # Only live, self-managed targets can receive a rollout.
    if target.status == "DELETED":
        raise TargetNotFoundError(
            "Target has been deleted. Please verify the target exists and try again.", code="TargetNotFound"
        )
    if target.permission_model == "SERVICE_MANAGED":
        raise ProvisioningValidationError(
            "Only SELF_MANAGED targets are supported for blueprint deployment.", code="UnsupportedPermissionModel"
        )
    if target.status != "ACTIVE":
        raise ProvisioningValidationError("Target must be in ACTIVE status for deployment.", code="InvalidStatus")
    return target


def rollout_policy(action: CreateAction) -> RolloutPolicy:
    return RolloutPolicy(
        region_concurrency_type=action.region_concurrency_type,
        max_concurrent_percentage=action.max_concurrent_percentage or 100,
        failure_tolerance_percentage=action.failure_tolerance_percentage or 0,
        concurrency_mode=action.concurrency_mode or "STRICT_FAILURE_TOLERANCE",
        region_order=tuple(action.regions) if action.region_concurrency_type == "SEQUENTIAL" else None,
    )


async def _record_rejected(
    ctx: DeploymentContext,
    action: CreateAction,
    started_at: datetime,
    *,
    error_type: str,
    error_message: str,
) -> CreateResult:
    # The attempt never started upstream, so it is closed in the same invocation.
    operation_id = f"not-started-{uuid4()}"
    await ctx.store.record_attempt_start(
        blueprint_id=action.blueprint_id,
        target_id=action.target_id,
        lease_id=action.lease_id,
        account_id=action.account_id,
        operation_id=operation_id,
        started_at=started_at,
    )
    await ctx.store.record_attempt_terminal(
        blueprint_id=action.blueprint_id,
        target_id=action.target_id,
        operation_id=operation_id,
        started_at=started_at,
        status="FAILED",
        duration_minutes=0.0,
        error_type=error_type,
        error_message=error_message,
    )
    increment_counter(f"deployments_rejected_total.{error_type}")
    return CreateResult(
        success=False,
        operation_id=operation_id,
        status="FAILED",
        error_message=error_message,
        error_type=error_type,
    )


async def create_deployment(ctx: DeploymentContext, action: CreateAction) -> CreateResult:
    started_at = action.execution_start_time
    call_context = {"target_id": action.target_id, "account_id": action.account_id}
    logger.info(
        "deployment_create blueprint_id=%s lease_id=%s target_id=%s regions=%s concurrency=%s",
        action.blueprint_id,
        action.lease_id,
        action.target_id,
        len(action.regions),
        action.region_concurrency_type,
    )
    try:
        target = await ctx.backoff.run(
            lambda: ctx.provisioning.describe_target(action.target_id), context=call_context
        )
        validate_target_for_deployment(target)
        operation_id = await ctx.backoff.run(
            lambda: ctx.provisioning.start_rollout(
                action.target_id,
                accounts=[action.account_id],
                regions=action.regions,
                policy=rollout_policy(action),
            ),
            context=call_context,
        )
    except OperationInProgressError:
        logger.error(
            "deployment_operation_in_progress blueprint_id=%s target_id=%s lease_id=%s",
            action.blueprint_id,
            action.target_id,
            action.lease_id,
        )
        return await _record_rejected(
            ctx,
            action,
            started_at,
            error_type="OperationInProgress",
            error_message=OPERATION_IN_PROGRESS_MESSAGE,
        )
    except TargetNotFoundError as exc:
        logger.error("deployment_target_not_found blueprint_id=%s target_id=%s", action.blueprint_id, action.target_id)
        return await _record_rejected(
            ctx,
            action,
            started_at,
            error_type="TargetNotFound",
            error_message=f"Deployment target '{action.target_id}' was not found: {exc}",
        )
    except ProvisioningValidationError as exc:
        logger.error("deployment_rollout_rejected blueprint_id=%s target_id=%s", action.blueprint_id, action.target_id)
        return await _record_rejected(
            ctx,
            action,
            started_at,
            error_type="InvalidRolloutRequest",
            error_message=f"Deployment target '{action.target_id}' rejected the rollout: {exc}",
        )

    await ctx.store.record_attempt_start(
        blueprint_id=action.blueprint_id,
        target_id=action.target_id,
        lease_id=action.lease_id,
        account_id=action.account_id,
        operation_id=operation_id,
        started_at=started_at,
    )
    increment_counter("deployments_started_total")
    return CreateResult(success=True, operation_id=operation_id, status="IN_PROGRESS")
