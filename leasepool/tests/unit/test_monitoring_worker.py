from __future__ import annotations

import pytest

from leasepool.workers.monitoring_worker import WorkerSettings, parse_cron_minutes


def test_parse_cron_minutes() -> None:
    assert parse_cron_minutes("0,15,30,45") == {0, 15, 30, 45}
    assert parse_cron_minutes(" 5 ") == {5}
    with pytest.raises(ValueError):
        parse_cron_minutes("61")
    with pytest.raises(ValueError):
        parse_cron_minutes("")


def test_worker_registers_cron_jobs() -> None:
    assert len(WorkerSettings.cron_jobs) == 2
    assert {job.name for job in WorkerSettings.cron_jobs} == {
        "cron:run_lease_monitoring",
        "cron:prune_deployments",
    }
