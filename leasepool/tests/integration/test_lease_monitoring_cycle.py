from __future__ import annotations

from datetime import timedelta

import pytest

from leasepool.core.errors import EventPublishError
from leasepool.providers.costs.fake import FakeCostProvider
from leasepool.providers.events.fake import FakeEventPublisher
from leasepool.services.costs import LeaseMonitoringCycle
from leasepool.services.costs import monitoring
from leasepool.tests.utils.builders import lease_values


async def _seed(store, clock) -> None:
    await store.create_lease(
        lease_values(
            id="lease-alert",
            account_id="acct-alert",
            budget_thresholds=[{"amount": 50, "action": "ALERT"}],
            start_date=clock.now - timedelta(hours=2),
            expiration_date=clock.now + timedelta(hours=46),
        )
    )
    await store.create_lease(lease_values(id="lease-over", account_id="acct-over", status="Frozen"))
    await store.create_lease(lease_values(id="lease-pending", account_id="acct-pending", status="PendingApproval"))
    await store.create_lease(lease_values(id="lease-unassigned", account_id=None))


@pytest.mark.asyncio
async def test_cycle_publishes_then_persists(settings, store, clock) -> None:
    await _seed(store, clock)
    costs = FakeCostProvider({"acct-alert": 60.0, "acct-over": 120.0, "acct-pending": 500.0})
    publisher = FakeEventPublisher()
    cycle = LeaseMonitoringCycle(settings, store, costs, publisher, clock=clock)

    summary = await cycle.run()

    assert sorted(publisher.types()) == ["LeaseBudgetExceeded", "LeaseBudgetThresholdBreached"]
    assert len(publisher.batches) == 1
    assert summary.leases_scanned == 3
    assert summary.leases_persisted == 2
    assert summary.evaluation_failures == 1
    assert len(costs.requests) == 1
    requested, as_of = costs.requests[0]
    assert set(requested) == {"acct-alert", "acct-over"}
    assert requested["acct-alert"] == clock.now - timedelta(hours=2)
    assert as_of == clock.now

    alert = await store.get_lease("lease-alert")
    assert alert is not None
    assert alert.total_cost_accrued == 60.0
    assert alert.last_checked_date == clock.now
    pending = await store.get_lease("lease-pending")
    assert pending is not None
    assert pending.last_checked_date is None


@pytest.mark.asyncio
async def test_repeat_cycle_does_not_repeat_threshold_alerts(settings, store, clock) -> None:
    await _seed(store, clock)
    costs = FakeCostProvider({"acct-alert": 60.0, "acct-over": 10.0})
    publisher = FakeEventPublisher()
    cycle = LeaseMonitoringCycle(settings, store, costs, publisher, clock=clock)

    await cycle.run()
    clock.advance(minutes=15)
    second = await cycle.run()

    assert publisher.types() == ["LeaseBudgetThresholdBreached"]
    assert second.events_published == 0
    assert second.leases_persisted == 2


@pytest.mark.asyncio
async def test_failed_publish_persists_nothing(settings, store, clock) -> None:
    await _seed(store, clock)
    cycle = LeaseMonitoringCycle(
        settings,
        store,
        FakeCostProvider({"acct-alert": 60.0, "acct-over": 120.0}),
        FakeEventPublisher(fail_with=EventPublishError("event bus down")),
        clock=clock,
    )

    with pytest.raises(EventPublishError):
        await cycle.run()

    for lease_id in ("lease-alert", "lease-over"):
        lease = await store.get_lease(lease_id)
        assert lease is not None
        assert lease.total_cost_accrued == 0.0
        assert lease.last_checked_date is None


@pytest.mark.asyncio
async def test_evaluation_failure_is_isolated(settings, store, clock, monkeypatch) -> None:
    await _seed(store, clock)
    real_evaluate = monitoring.evaluate_lease

    def flaky_evaluate(snapshot, current_cost, now):
        if snapshot.lease_id == "lease-over":
            raise ValueError("corrupt thresholds")
        return real_evaluate(snapshot, current_cost, now)

    monkeypatch.setattr(monitoring, "evaluate_lease", flaky_evaluate)
    publisher = FakeEventPublisher()
    cycle = LeaseMonitoringCycle(
        settings, store, FakeCostProvider({"acct-alert": 60.0, "acct-over": 120.0}), publisher, clock=clock
    )

    summary = await cycle.run()

    assert publisher.types() == ["LeaseBudgetThresholdBreached"]
    assert summary.evaluation_failures == 2
    over = await store.get_lease("lease-over")
    assert over is not None
    assert over.last_checked_date is None
    alert = await store.get_lease("lease-alert")
    assert alert is not None
    assert alert.last_checked_date == clock.now


@pytest.mark.asyncio
async def test_missing_cost_keeps_previous_total(settings, store, clock) -> None:
    await store.create_lease(lease_values(id="lease-1", account_id="acct-1", total_cost_accrued=12.0))
    publisher = FakeEventPublisher()
    cycle = LeaseMonitoringCycle(settings, store, FakeCostProvider({}), publisher, clock=clock)

    summary = await cycle.run()

    assert publisher.published == []
    assert summary.leases_persisted == 1
    lease = await store.get_lease("lease-1")
    assert lease is not None
    assert lease.total_cost_accrued == 12.0
    assert lease.last_checked_date == clock.now


@pytest.mark.asyncio
async def test_persistence_failure_is_isolated(settings, store, clock, monkeypatch) -> None:
    await _seed(store, clock)
    real_record = store.record_lease_check

    async def flaky_record(lease_id, **kwargs):
        if lease_id == "lease-alert":
            raise RuntimeError("connection reset")
        await real_record(lease_id, **kwargs)

    monkeypatch.setattr(store, "record_lease_check", flaky_record)
    publisher = FakeEventPublisher()
    cycle = LeaseMonitoringCycle(
        settings, store, FakeCostProvider({"acct-alert": 60.0, "acct-over": 120.0}), publisher, clock=clock
    )

    summary = await cycle.run()

    assert sorted(publisher.types()) == ["LeaseBudgetExceeded", "LeaseBudgetThresholdBreached"]
    assert summary.persistence_failures == 1
    assert summary.leases_persisted == 1
    alert = await store.get_lease("lease-alert")
    assert alert is not None
    assert alert.last_checked_date is None
    assert alert.total_cost_accrued == 0.0
    over = await store.get_lease("lease-over")
    assert over is not None
    assert over.total_cost_accrued == 120.0
    assert over.last_checked_date == clock.now
