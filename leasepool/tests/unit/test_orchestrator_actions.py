from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from leasepool.core.errors import OperationInProgressError, ProvisioningError, ThrottlingError
from leasepool.domain.events import DeploymentFailed, DeploymentSucceeded
from leasepool.providers.provisioning.base import FailedInstance, OperationStatus
from leasepool.services.deployments import DeploymentOrchestrator
from leasepool.services.deployments.publish_result import deployment_event_id
from leasepool.tests.utils.builders import blueprint_values, target_values


STARTED_AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def orchestrator(settings, store, provisioning, publisher, backoff, clock) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(settings, store, provisioning, publisher, backoff=backoff, clock=clock)


def _create(**overrides) -> dict:
    payload = {
        "action": "CREATE",
        "blueprint_id": "bp-1",
        "lease_id": "lease-1",
        "account_id": "111122223333",
        "target_id": "stackset-web",
        "regions": ["us-east-1", "eu-west-1"],
        "region_concurrency_type": "SEQUENTIAL",
        "execution_start_time": STARTED_AT,
    }
    payload.update(overrides)
    return payload


def _check(operation_id: str, started_at, **overrides) -> dict:
    payload = {
        "action": "CHECK_STATUS",
        "operation_id": operation_id,
        "blueprint_id": "bp-1",
        "target_id": "stackset-web",
        "lease_id": "lease-1",
        "account_id": "111122223333",
        "deployment_timeout_minutes": 30,
        "execution_start_time": started_at,
    }
    payload.update(overrides)
    return payload


def _publish(status: str, **overrides) -> dict:
    payload = {
        "action": "PUBLISH_RESULT",
        "lease_id": "lease-1",
        "user_email": "dev@example.com",
        "blueprint_id": "bp-1",
        "blueprint_name": "web-baseline",
        "account_id": "111122223333",
        "operation_id": "op-1",
        "status": status,
    }
    payload.update(overrides)
    return payload


async def _running(store, operation_id: str, started_at) -> None:
    await store.record_attempt_start(
        blueprint_id="bp-1",
        target_id="stackset-web",
        lease_id="lease-1",
        account_id="111122223333",
        operation_id=operation_id,
        started_at=started_at,
    )


@pytest.mark.asyncio
async def test_create_starts_rollout_and_records_running(orchestrator, provisioning, store, clock) -> None:
    result = await orchestrator.handle(_create(execution_start_time=clock.now))

    assert result.success is True
    assert result.status == "IN_PROGRESS"
    _, call = provisioning.calls[-1]
    assert call["accounts"] == ["111122223333"]
    assert call["policy"].region_order == ("us-east-1", "eu-west-1")
    assert call["policy"].max_concurrent_percentage == 100
    assert call["policy"].failure_tolerance_percentage == 0
    record = await store.get_deployment("bp-1", clock.now, result.operation_id)
    assert record is not None
    assert record.status == "RUNNING"


@pytest.mark.asyncio
async def test_create_parallel_rollout_has_no_region_order(orchestrator, provisioning) -> None:
    await orchestrator.handle(_create(region_concurrency_type="PARALLEL", max_concurrent_percentage=50))

    _, call = provisioning.calls[-1]
    assert call["policy"].region_order is None
    assert call["policy"].max_concurrent_percentage == 50


@pytest.mark.asyncio
async def test_create_operation_in_progress_is_recorded_without_retry(
    orchestrator, provisioning, store, sleeps, clock
) -> None:
    await store.create_blueprint(blueprint_values(), target_values())
    provisioning.fail_next("start_rollout", OperationInProgressError("busy", status_code=409))

    result = await orchestrator.handle(_create(execution_start_time=clock.now))

    assert result.success is False
    assert result.status == "FAILED"
    assert result.error_type == "OperationInProgress"
    assert result.operation_id.startswith("not-started-")
    assert "Another operation is in progress" in result.error_message
    assert provisioning.calls_to("start_rollout") == 1
    assert sleeps == []
    record = await store.get_deployment("bp-1", clock.now, result.operation_id)
    assert record is not None
    assert record.status == "FAILED"
    assert record.error_type == "OperationInProgress"
    assert record.duration_minutes == 0.0
    blueprint = await store.get_blueprint("bp-1")
    assert blueprint is not None
    assert blueprint.blueprint.total_deployment_count == 1
    assert blueprint.targets[0].consecutive_failures == 1


@pytest.mark.asyncio
async def test_create_missing_target_is_recorded(orchestrator, store) -> None:
    result = await orchestrator.handle(_create(target_id="stackset-missing"))

    assert result.success is False
    assert result.error_type == "TargetNotFound"
    history = await store.list_deployment_history("bp-1")
    assert [record.error_type for record in history.items] == ["TargetNotFound"]


@pytest.mark.asyncio
async def test_create_rejects_service_managed_target(orchestrator, provisioning) -> None:
    provisioning.add_target("stackset-web", permission_model="SERVICE_MANAGED")

    result = await orchestrator.handle(_create())

    assert result.error_type == "InvalidRolloutRequest"
    assert provisioning.calls_to("start_rollout") == 0


@pytest.mark.asyncio
async def test_create_retries_throttling(orchestrator, provisioning, sleeps) -> None:
    provisioning.fail_next("start_rollout", ThrottlingError("slow"), ThrottlingError("slow"))

    result = await orchestrator.handle(_create())

    assert result.success is True
    assert provisioning.calls_to("start_rollout") == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_create_propagates_exhausted_transient_errors(orchestrator, provisioning, store) -> None:
    provisioning.fail_next("describe_target", *[ThrottlingError("slow") for _ in range(5)])

    with pytest.raises(ThrottlingError):
        await orchestrator.handle(_create())
    history = await store.list_deployment_history("bp-1")
    assert history.items == []


@pytest.mark.asyncio
async def test_check_status_timeout_is_inclusive_and_skips_api(orchestrator, provisioning, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    clock.advance(minutes=5)

    result = await orchestrator.handle(_check("op-1", started_at, deployment_timeout_minutes=5))

    assert result.status == "FAILED"
    assert result.error_type == "DeploymentTimeout"
    assert result.error_message == "Deployment exceeded 5 minute timeout"
    assert provisioning.calls_to("poll_operation") == 0
    record = await store.get_deployment("bp-1", started_at, "op-1")
    assert record is not None
    assert record.status == "FAILED"
    assert record.error_message == "Deployment exceeded 5 minute timeout"


@pytest.mark.asyncio
async def test_check_status_running_changes_nothing(orchestrator, provisioning, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    before = await store.get_deployment("bp-1", started_at, "op-1")
    provisioning.script_operation("op-1", OperationStatus(status="RUNNING"))
    clock.advance(minutes=4)

    result = await orchestrator.handle(_check("op-1", started_at, deployment_timeout_minutes=5))

    assert result.status == "IN_PROGRESS"
    after = await store.get_deployment("bp-1", started_at, "op-1")
    assert after is not None and before is not None
    assert after.status == "RUNNING"
    assert after.last_edit_time == before.last_edit_time


@pytest.mark.asyncio
async def test_check_status_success_records_duration(orchestrator, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    clock.advance(minutes=2)

    result = await orchestrator.handle(_check("op-1", started_at))

    assert result.status == "SUCCEEDED"
    assert result.error_type is None
    record = await store.get_deployment("bp-1", started_at, "op-1")
    assert record is not None
    assert record.status == "SUCCEEDED"
    assert record.duration_minutes == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_check_status_failure_lists_regions(orchestrator, provisioning, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    provisioning.script_operation("op-1", OperationStatus(status="FAILED", reason="Tolerance exceeded"))
    provisioning.failed_instances["op-1"] = [
        FailedInstance(region="us-east-1", reason="Template error"),
        FailedInstance(region="eu-west-1"),
    ]

    result = await orchestrator.handle(_check("op-1", started_at))

    assert result.status == "FAILED"
    assert result.error_type == "DeploymentFailed"
    assert result.error_message == "us-east-1: Template error; eu-west-1: Unknown error"


@pytest.mark.asyncio
async def test_check_status_stopped_falls_back_to_reason(orchestrator, provisioning, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    await _running(store, "op-2", started_at)
    provisioning.script_operation("op-1", OperationStatus(status="STOPPED", reason="Stopped by user"))
    provisioning.script_operation("op-2", OperationStatus(status="STOPPED"))
    provisioning.fail_next("list_failed_instances", ProvisioningError("boom", status_code=500))

    stopped = await orchestrator.handle(_check("op-1", started_at))
    generic = await orchestrator.handle(_check("op-2", started_at))

    assert stopped.error_message == "Stopped by user"
    assert generic.error_message == "Stack instance deployment failed"


@pytest.mark.asyncio
async def test_check_status_without_status_raises(orchestrator, provisioning, store, clock) -> None:
    started_at = clock.now
    await _running(store, "op-1", started_at)
    provisioning.script_operation("op-1", OperationStatus(status=None))

    with pytest.raises(ProvisioningError, match="did not return operation status"):
        await orchestrator.handle(_check("op-1", started_at))


@pytest.mark.asyncio
async def test_publish_result_emits_one_event(orchestrator, publisher) -> None:
    result = await orchestrator.handle(_publish("SUCCEEDED"))

    assert result.published is True
    assert result.status == "SUCCEEDED"
    assert len(publisher.published) == 1
    event = publisher.published[0]
    assert isinstance(event, DeploymentSucceeded)
    assert event.lease_id.uuid == "lease-1"
    assert event.event_id == deployment_event_id("op-1", "SUCCEEDED")


@pytest.mark.asyncio
async def test_publish_failed_defaults_error_message(orchestrator, publisher) -> None:
    await orchestrator.handle(_publish("FAILED"))
    await orchestrator.handle(_publish("FAILED"))

    first, second = publisher.published
    assert isinstance(first, DeploymentFailed)
    assert first.error_message == "Unknown deployment error"
    assert first.event_id == second.event_id


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected_before_any_call(orchestrator, provisioning) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.handle({"action": "CREATE", "blueprint_id": "bp-1"})
    with pytest.raises(ValidationError):
        await orchestrator.handle({"action": "DELETE"})
    assert provisioning.calls == []


@pytest.mark.asyncio
async def test_create_requires_execution_start_time(orchestrator, provisioning) -> None:
    payload = _create()
    del payload["execution_start_time"]

    with pytest.raises(ValidationError):
        await orchestrator.handle(payload)
    assert provisioning.calls == []


@pytest.mark.asyncio
async def test_check_status_closes_attempt_started_by_create(orchestrator, provisioning, store, clock) -> None:
    await store.create_blueprint(blueprint_values(), target_values())
    started_at = clock.now
    created = await orchestrator.handle(_create(execution_start_time=started_at.isoformat()))
    provisioning.script_operation(created.operation_id, OperationStatus(status="SUCCEEDED"))
    clock.advance(minutes=3)

    checked = await orchestrator.handle(_check(created.operation_id, started_at.isoformat()))

    assert checked.status == "SUCCEEDED"
    record = await store.get_deployment("bp-1", started_at, created.operation_id)
    assert record is not None
    assert record.status == "SUCCEEDED"
    assert record.duration_minutes == pytest.approx(3.0)
    blueprint = await store.get_blueprint("bp-1")
    assert blueprint is not None
    assert blueprint.blueprint.total_deployment_count == 1
    assert blueprint.targets[0].successful_deployment_count == 1
