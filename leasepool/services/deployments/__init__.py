from __future__ import annotations

# Re-export the deployment orchestrator surface for centralized imports.

from leasepool.services.deployments.actions import (
    CheckStatusAction,
    CheckStatusResult,
    CreateAction,
    CreateResult,
    PublishResult,
    PublishResultAction,
    parse_action,
)
from leasepool.services.deployments.orchestrator import DeploymentOrchestrator

__all__ = [
    "CheckStatusAction",
    "CheckStatusResult",
    "CreateAction",
    "CreateResult",
    "DeploymentOrchestrator",
    "PublishResult",
    "PublishResultAction",
    "parse_action",
]
