import asyncio
import os
import signal
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.jobs import worker
from app.jobs.dependencies import JobDependencies
from app.jobs.workflow_timer_job import run_workflow_timer_cycle, start_workflow_timer_scheduler
from app.models.domain.workflow_domain import WorkflowStatus

ONBOARDING = {
    "userId": "user-1",
    "email": "a@example.com",
    "fullName": "A",
    "userType": "individual",
}


@pytest.fixture
def connections(monkeypatch):
    pool = AsyncMock()
    redis = AsyncMock()
    monkeypatch.setattr(worker, "db_pool", pool)
    monkeypatch.setattr(worker, "fast_redis", redis)
    return pool, redis


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch, connections):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True
    pool, redis = connections
    pool.initialize.assert_awaited_once()
    redis.initialize.assert_awaited_once()
    redis.close.assert_awaited_once()
    pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_closes_connections_on_failure(monkeypatch, connections):
    async def broken_job():
        raise RuntimeError("boom")

    monkeypatch.setitem(worker.JOB_REGISTRY, "broken", broken_job)

    with pytest.raises(RuntimeError):
        await worker.run_worker("broken")

    pool, redis = connections
    redis.close.assert_awaited_once()
    pool.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_worker_unknown_job(connections):
    with pytest.raises(ValueError):
        await worker.run_worker("missing")

    pool, _ = connections
    pool.initialize.assert_not_awaited()


def test_registry_names():
    assert set(worker.JOB_REGISTRY) == {"jobs_consumer", "workflow_timers"}


@pytest.mark.asyncio
async def test_timer_cycle_resumes_due_waits(engine, profiles, clock, notifications_queue):
    profiles.scores["user-1"] = 0
    await engine.start(
        "user-onboarding",
        {
            "userId": "user-1",
            "email": "a@example.com",
            "fullName": "A",
            "userType": "individual",
        },
    )

    assert await run_workflow_timer_cycle(engine) == {"resumed": 0, "recovered": 0}

    clock.advance(days=7)
    assert await run_workflow_timer_cycle(engine) == {"resumed": 1, "recovered": 0}
    assert len(notifications_queue.of_type("profile-reminder")) == 1


def test_job_dependencies_from_globals(fake_redis):
    deps = JobDependencies.from_globals(fake_redis)

    assert deps.dedupe.ttl_s == 3600
    assert deps.dedupe.in_flight_grace_s == 300
    assert deps.clock().tzinfo is not None


@pytest.mark.asyncio
async def test_timer_cycle_recovers_instances_stuck_running(engine, profiles, workflow_store, clock):
    profiles.scores["user-1"] = 0
    instance = await engine.start("user-onboarding", ONBOARDING)

    # API process died mid-advance, long after the scheduler's startup sweep
    await workflow_store.update_instance(instance.id, now=clock.now, status=WorkflowStatus.RUNNING)
    stale_after = timedelta(seconds=120)

    assert await run_workflow_timer_cycle(engine, stale_after) == {"resumed": 0, "recovered": 0}

    clock.advance(seconds=121)
    assert await run_workflow_timer_cycle(engine, stale_after) == {"resumed": 0, "recovered": 1}

    current = await engine.get_status(instance.id)
    assert current.status == WorkflowStatus.WAITING
    assert current.waiting_for == "profile_completed"


@pytest.mark.asyncio
async def test_timer_scheduler_exits_when_stopped(engine):
    stop_event = asyncio.Event()
    stop_event.set()

    await asyncio.wait_for(
        start_workflow_timer_scheduler(engine, interval_s=3600, stop_event=stop_event), timeout=1
    )


@pytest.mark.asyncio
async def test_sigterm_requests_graceful_stop():
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    worker._install_stop_handlers(stopped.set)
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(stopped.wait(), timeout=1)
    finally:
        loop.remove_signal_handler(signal.SIGTERM)
        loop.remove_signal_handler(signal.SIGINT)

    assert stopped.is_set()
