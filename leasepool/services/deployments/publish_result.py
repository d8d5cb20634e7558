from __future__ import annotations

import logging
from uuid import NAMESPACE_URL, uuid5

from leasepool.domain.events import DeploymentFailed, DeploymentSucceeded, LeaseIdentity
from leasepool.services.deployments.actions import PublishResult, PublishResultAction
from leasepool.services.deployments.context import DeploymentContext


logger = logging.getLogger(__name__)

DEFAULT_DEPLOYMENT_ERROR = "Unknown deployment error"


def deployment_event_id(operation_id: str, status: str) -> str:
    # Re-publishing the same outcome reuses the id so consumers can dedupe.
    return str(uuid5(NAMESPACE_URL, f"leasepool:deployment:{operation_id}:{status}"))


async def publish_deployment_result(ctx: DeploymentContext, action: PublishResultAction) -> PublishResult:
    identity = LeaseIdentity(user_email=action.user_email, uuid=action.lease_id)
    event_id = deployment_event_id(action.operation_id, action.status)
    if action.status == "SUCCEEDED":
        event: DeploymentSucceeded | DeploymentFailed = DeploymentSucceeded(
            event_id=event_id,
            lease_id=identity,
            blueprint_id=action.blueprint_id,
            blueprint_name=action.blueprint_name,
            account_id=action.account_id,
            operation_id=action.operation_id,
        )
    else:
        event = DeploymentFailed(
            event_id=event_id,
            lease_id=identity,
            blueprint_id=action.blueprint_id,
            blueprint_name=action.blueprint_name,
            account_id=action.account_id,
            operation_id=action.operation_id,
            error_message=action.error_message or DEFAULT_DEPLOYMENT_ERROR,
        )
    await ctx.publisher.publish([event])
    logger.info(
        "deployment_result_published operation_id=%s status=%s lease_id=%s",
        action.operation_id,
        action.status,
        action.lease_id,
    )
    return PublishResult(published=True, status=action.status)
