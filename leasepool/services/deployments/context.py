from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from leasepool.core.config import Settings
from leasepool.persistence.store import RecordStore
from leasepool.providers.events.base import EventPublisher
from leasepool.providers.provisioning.base import ProvisioningProvider
from leasepool.services.resilience import BackoffExecutor


@dataclass(frozen=True)
class DeploymentContext:
    # Collaborators shared by every orchestrator action.
    settings: Settings
    store: RecordStore
    provisioning: ProvisioningProvider
    publisher: EventPublisher
    backoff: BackoffExecutor
    clock: Callable[[], datetime]


def elapsed_minutes(start: datetime, now: datetime) -> float:
    return (now - start).total_seconds() / 60.0
