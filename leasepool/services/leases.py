from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

from leasepool.core.errors import RecordValidationError, UnknownItem
from leasepool.domain.models import Lease
from leasepool.domain.schemas import LeasePatch
from leasepool.persistence.store import RecordStore


logger = logging.getLogger(__name__)

# Allowed source statuses for each lifecycle transition.
_FREEZABLE = ("Active",)
_UNFREEZABLE = ("Frozen",)
_EXPIRABLE = ("Active", "Frozen")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LeaseLifecycle:
    """Status transitions applied in response to freeze and expiry events.

    Each transition reads the lease, checks the source status and writes with
    the read ``last_edit_time`` as the expected version, so a concurrent edit
    surfaces as ``ConcurrentModification`` rather than being overwritten.
    """

    def __init__(self, store: RecordStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or _utc_now

    async def _transition(self, lease_id: str, allowed: tuple[str, ...], patch: LeasePatch) -> Lease:
        lease = await self._store.get_lease(lease_id)
        if lease is None:
            raise UnknownItem(f"Lease {lease_id} not found")
        if lease.status not in allowed:
            raise RecordValidationError(
                f"Lease {lease_id} cannot move from {lease.status} to {patch.status}"
            )
        updated = await self._store.update_lease(lease_id, patch, expected_version=lease.last_edit_time)
        logger.info("lease_transition lease_id=%s from=%s to=%s", lease_id, lease.status, updated.status)
        return updated

    async def freeze(self, lease_id: str) -> Lease:
        return await self._transition(lease_id, _FREEZABLE, LeasePatch(status="Frozen"))

    async def unfreeze(self, lease_id: str) -> Lease:
        return await self._transition(lease_id, _UNFREEZABLE, LeasePatch(status="Active"))

    async def expire(self, lease_id: str) -> Lease:
        # Expired leases leave the monitoring scan and are stamped as archived.
        return await self._transition(
            lease_id, _EXPIRABLE, LeasePatch(status="Expired", archived_at=self._clock())
        )
