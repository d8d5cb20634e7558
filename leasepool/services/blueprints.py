from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from leasepool.core.config import Settings
from leasepool.core.errors import ProvisioningValidationError, TargetNotFoundError
from leasepool.domain.models import Blueprint, DeploymentRecord
from leasepool.domain.schemas import BlueprintDraft, BlueprintPatch, DeploymentTargetDraft, DeploymentTargetPatch
from leasepool.persistence.metadata import validate_record
from leasepool.persistence.store import BlueprintWithTargets, Page, RecordStore
from leasepool.providers.provisioning.base import ProvisioningProvider, TargetDescription
from leasepool.services.resilience import BackoffExecutor


logger = logging.getLogger(__name__)


def validate_target_for_registration(target: TargetDescription) -> None:
    # Registration also rejects service-linked admin roles the rollout cannot assume.
    if target.status == "DELETED":
        raise TargetNotFoundError(f"Target {target.target_id} has been deleted", code="TargetNotFound")
    if target.permission_model == "SERVICE_MANAGED":
        raise ProvisioningValidationError(
            "Only SELF_MANAGED targets are supported for blueprint deployment.", code="UnsupportedPermissionModel"
        )
    if target.administration_role and "/service-role/" in target.administration_role:
        raise ProvisioningValidationError(
            "Target administration role must not be a service-linked role.", code="InvalidAdministrationRole"
        )
    if target.status != "ACTIVE":
        raise ProvisioningValidationError("Target must be in ACTIVE status for deployment.", code="InvalidStatus")


class BlueprintService:
    """Registers, updates and unregisters blueprints with their deployment target."""

    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        provisioning: ProvisioningProvider,
        *,
        backoff: BackoffExecutor | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._provisioning = provisioning
        self._backoff = backoff or BackoffExecutor.from_settings(settings)

    async def _check_target(self, target_id: str) -> None:
        target = await self._backoff.run(
            lambda: self._provisioning.describe_target(target_id), context={"target_id": target_id}
        )
        validate_target_for_registration(target)

    async def register(
        self,
        blueprint: BlueprintDraft | dict[str, Any],
        target: DeploymentTargetDraft | dict[str, Any],
    ) -> BlueprintWithTargets:
        # Validate locally first so a malformed request never reaches the provisioning API.
        blueprint_draft = validate_record(BlueprintDraft, blueprint)
        target_draft = validate_record(DeploymentTargetDraft, target)
        await self._check_target(target_draft.target_id)
        created = await self._store.create_blueprint(blueprint_draft, target_draft)
        logger.info(
            "blueprint_registered blueprint_id=%s name=%s target_id=%s regions=%s",
            created.blueprint.id,
            created.blueprint.name,
            target_draft.target_id,
            len(target_draft.regions),
        )
        return created

    async def get(self, blueprint_id: str) -> BlueprintWithTargets | None:
        return await self._store.get_blueprint(blueprint_id)

    async def list_blueprints(self, *, cursor: str | None = None, limit: int | None = None) -> Page[Blueprint]:
        return await self._store.list_blueprints(cursor=cursor, limit=limit)

    async def update(
        self,
        blueprint_id: str,
        patch: BlueprintPatch | dict[str, Any],
        *,
        expected_version: datetime,
        target_id: str | None = None,
        target_patch: DeploymentTargetPatch | dict[str, Any] | None = None,
        expected_target_version: datetime | None = None,
    ) -> BlueprintWithTargets:
        if target_id is None or target_patch is None:
            row = await self._store.update_blueprint(blueprint_id, patch, expected_version=expected_version)
            current = await self._store.get_blueprint(row.id)
            return current or BlueprintWithTargets(blueprint=row)
        return await self._store.update_blueprint_with_target(
            blueprint_id,
            patch,
            target_id,
            target_patch,
            expected_blueprint_version=expected_version,
            expected_target_version=expected_target_version,
        )

    async def unregister(self, blueprint_id: str) -> None:
        # Deployment history is left to expire through its retention window.
        await self._store.delete_blueprint(blueprint_id)
        logger.info("blueprint_unregistered blueprint_id=%s", blueprint_id)

    async def history(
        self, blueprint_id: str, *, cursor: str | None = None, limit: int | None = None
    ) -> Page[DeploymentRecord]:
        return await self._store.list_deployment_history(blueprint_id, cursor=cursor, limit=limit)
