from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, assert_never

from leasepool.core.config import Settings
from leasepool.persistence.store import RecordStore
from leasepool.providers.events.base import EventPublisher
from leasepool.providers.provisioning.base import ProvisioningProvider
from leasepool.services.deployments.actions import (
    ActionResult,
    CheckStatusAction,
    CreateAction,
    PublishResultAction,
    parse_action,
)
from leasepool.services.deployments.check_status import check_deployment_status
from leasepool.services.deployments.context import DeploymentContext
from leasepool.services.deployments.create import create_deployment
from leasepool.services.deployments.publish_result import publish_deployment_result
from leasepool.services.resilience import BackoffExecutor


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentOrchestrator:
    """Entry point for the CREATE / CHECK_STATUS / PUBLISH_RESULT actions.

    An external workflow driver invokes one action per call and re-invokes
    CHECK_STATUS on a timer until it reports a terminal status.
    """

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        provisioning: ProvisioningProvider,
        publisher: EventPublisher,
        *,
        backoff: BackoffExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ctx = DeploymentContext(
            settings=settings,
            store=store,
            provisioning=provisioning,
            publisher=publisher,
            backoff=backoff or BackoffExecutor.from_settings(settings),
            clock=clock or _utc_now,
        )

    async def handle(self, payload: Any) -> ActionResult:
        action = parse_action(payload)
        logger.info("orchestrator_action action=%s", action.action)
        if isinstance(action, CreateAction):
            return await create_deployment(self._ctx, action)
        elif isinstance(action, CheckStatusAction):
            return await check_deployment_status(self._ctx, action)
        elif isinstance(action, PublishResultAction):
            return await publish_deployment_result(self._ctx, action)
        else:
            assert_never(action)
