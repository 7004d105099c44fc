from datetime import timedelta

import pytest
from pydantic import ValidationError

from app.infrastructure.observability.logging import setup_logging
from app.models.domain.workflow_domain import StepStatus, WorkflowEvent, WorkflowStatus
from app.workflows.engine import (
    RedisInstanceLock,
    UnknownWorkflowError,
    WorkflowNotFoundError,
    WorkflowStateError,
)

PAYLOAD = {
    "userId": "user-1",
    "email": "thandi@example.com",
    "fullName": "Thandi Moyo",
    "userType": "individual",
}


def _awards(jobs_queue, contribution_type: str) -> list:
    return [
        m
        for m in jobs_queue.of_type("award-ubuntu-points")
        if m.payload["contributionType"] == contribution_type
    ]


@pytest.fixture(autouse=True)
def _profile(profiles):
    profiles.scores["user-1"] = 0


@pytest.mark.asyncio
async def test_start_runs_until_profile_wait(engine, jobs_queue, notifications_queue, clock):
    instance = await engine.start("user-onboarding", PAYLOAD)

    assert instance.status == WorkflowStatus.WAITING
    assert instance.waiting_for == "profile_completed"
    assert instance.wait_deadline == clock.now + timedelta(days=7)

    [welcome] = notifications_queue.of_type("welcome-email")
    assert welcome.payload["to"] == "thandi@example.com"
    assert welcome.payload["data"]["fullName"] == "Thandi Moyo"
    [first_login] = _awards(jobs_queue, "first_login")
    assert first_login.payload["points"] == 10


@pytest.mark.asyncio
async def test_profile_timeout_sends_reminder_and_moves_on(
    engine, clock, jobs_queue, notifications_queue
):
    instance = await engine.start("user-onboarding", PAYLOAD)

    clock.advance(days=6, hours=23)
    assert await engine.resume_due() == 0

    clock.advance(hours=1)
    assert await engine.resume_due() == 1

    current = await engine.get_status(instance.id)
    assert current.status == WorkflowStatus.WAITING
    assert current.waiting_for == "first_contribution"
    assert len(notifications_queue.of_type("profile-reminder")) == 1
    assert _awards(jobs_queue, "profile_completed") == []


@pytest.mark.asyncio
async def test_profile_event_on_day_six_awards_points(
    engine, clock, jobs_queue, notifications_queue
):
    instance = await engine.start("user-onboarding", PAYLOAD)

    clock.advance(days=6)
    assert await engine.send_event(instance.id, "profile_completed", {"step": "profile_completed"})

    current = await engine.get_status(instance.id)
    assert current.waiting_for == "first_contribution"
    assert notifications_queue.of_type("profile-reminder") == []
    [award] = _awards(jobs_queue, "profile_completed")
    assert award.payload["points"] == 25


@pytest.mark.asyncio
async def test_event_after_deadline_takes_timeout_branch(
    engine, clock, jobs_queue, notifications_queue
):
    instance = await engine.start("user-onboarding", PAYLOAD)

    clock.advance(days=8)
    await engine.send_event(instance.id, "profile_completed")

    assert len(notifications_queue.of_type("profile-reminder")) == 1
    assert _awards(jobs_queue, "profile_completed") == []


@pytest.mark.asyncio
async def test_full_run_completes_onboarding(engine, clock, jobs_queue, notifications_queue, profiles):
    instance = await engine.start("user-onboarding", PAYLOAD)

    clock.advance(days=1)
    await engine.send_event(instance.id, "profile_completed")
    clock.advance(days=2)
    await engine.send_event(instance.id, "first_contribution")

    current = await engine.get_status(instance.id)
    assert current.status == WorkflowStatus.COMPLETED
    assert current.output == {"status": "completed", "userId": "user-1"}
    assert current.completed_at == clock.now
    assert len(_awards(jobs_queue, "first_contribution")) == 1
    assert len(notifications_queue.of_type("first-contribution-congrats")) == 1
    assert profiles.onboarded["user-1"] == clock.now


@pytest.mark.asyncio
async def test_contribution_timeout_sends_engagement_reminder(engine, clock, notifications_queue):
    instance = await engine.start("user-onboarding", PAYLOAD)

    clock.advance(days=1)
    await engine.send_event(instance.id, "profile_completed")
    clock.advance(days=31)
    await engine.resume_due()

    current = await engine.get_status(instance.id)
    assert current.status == WorkflowStatus.COMPLETED
    assert len(notifications_queue.of_type("engagement-reminder")) == 1


@pytest.mark.asyncio
async def test_restart_mid_wait_resumes_exactly_once(
    make_engine, workflow_store, clock, jobs_queue
):
    first_process = make_engine()
    instance = await first_process.start("user-onboarding", PAYLOAD)
    clock.advance(days=2)

    # New process, same durable state; the event is delivered twice
    second_process = make_engine()
    await second_process.send_event(instance.id, "profile_completed")
    await second_process.send_event(instance.id, "profile_completed")

    # Crash left the instance marked running; recovery replays from the store
    await workflow_store.update_instance(
        instance.id, now=clock.now, status=WorkflowStatus.RUNNING
    )
    third_process = make_engine()
    assert await third_process.recover() == 1

    current = await third_process.get_status(instance.id)
    assert current.status == WorkflowStatus.WAITING
    assert current.waiting_for == "first_contribution"
    assert len(_awards(jobs_queue, "first_login")) == 1
    assert len(_awards(jobs_queue, "profile_completed")) == 1


@pytest.mark.asyncio
async def test_wait_deadline_survives_restart(make_engine, clock, notifications_queue):
    instance = await make_engine().start("user-onboarding", PAYLOAD)
    original_deadline = instance.wait_deadline

    clock.advance(days=3)
    restarted = make_engine()
    await restarted.advance(instance.id)

    current = await restarted.get_status(instance.id)
    assert current.wait_deadline == original_deadline

    clock.advance(days=4)
    assert await restarted.resume_due() == 1
    assert len(notifications_queue.of_type("profile-reminder")) == 1


@pytest.mark.asyncio
async def test_events_are_scoped_to_their_instance(engine, profiles, jobs_queue):
    profiles.scores["user-2"] = 0
    first = await engine.start("user-onboarding", PAYLOAD)
    second = await engine.start("user-onboarding", {**PAYLOAD, "userId": "user-2"})

    await engine.send_event(first.id, "profile_completed")

    assert (await engine.get_status(first.id)).waiting_for == "first_contribution"
    assert (await engine.get_status(second.id)).waiting_for == "profile_completed"
    [award] = _awards(jobs_queue, "profile_completed")
    assert award.payload["userId"] == "user-1"


@pytest.mark.asyncio
async def test_unrelated_event_does_not_advance(engine):
    instance = await engine.start("user-onboarding", PAYLOAD)

    assert await engine.send_event(instance.id, "first_contribution")

    current = await engine.get_status(instance.id)
    assert current.waiting_for == "profile_completed"


@pytest.mark.asyncio
async def test_cancel_stops_instance(engine, clock, notifications_queue):
    instance = await engine.start("user-onboarding", PAYLOAD)

    cancelled = await engine.cancel(instance.id)
    assert cancelled.status == WorkflowStatus.CANCELLED

    clock.advance(days=8)
    assert await engine.resume_due() == 0
    assert await engine.send_event(instance.id, "profile_completed") is False
    assert notifications_queue.of_type("profile-reminder") == []

    with pytest.raises(WorkflowStateError):
        await engine.cancel(instance.id)


@pytest.mark.asyncio
async def test_step_failure_is_retried_then_fails_instance(
    make_engine, notifications_queue, sleeps
):
    notifications_queue.fail_with = RuntimeError("queue unavailable")
    engine = make_engine()

    instance = await engine.start("user-onboarding", PAYLOAD)

    assert instance.status == WorkflowStatus.FAILED
    assert "send-welcome" in instance.error
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transient_step_failure_recovers(make_engine, notifications_queue, workflow_store):
    calls = {"n": 0}
    original_send = notifications_queue.send

    async def _flaky(message):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("blip")
        await original_send(message)

    notifications_queue.send = _flaky
    instance = await make_engine().start("user-onboarding", PAYLOAD)

    assert instance.status == WorkflowStatus.WAITING
    step = workflow_store.steps[(instance.id, "send-welcome")]
    assert step.status == StepStatus.COMPLETED
    assert step.attempts == 2


@pytest.mark.asyncio
async def test_invalid_payload_is_rejected(engine, workflow_store):
    with pytest.raises(ValidationError):
        await engine.start("user-onboarding", {"userId": "user-1"})
    assert workflow_store.instances == {}


@pytest.mark.asyncio
async def test_unknown_workflow_and_instance(engine):
    with pytest.raises(UnknownWorkflowError):
        await engine.start("launch-rocket", PAYLOAD)
    with pytest.raises(WorkflowNotFoundError):
        await engine.get_status("missing")
    with pytest.raises(WorkflowNotFoundError):
        await engine.send_event("missing", "profile_completed")


@pytest.mark.asyncio
async def test_busy_instance_is_not_advanced_twice(make_engine, fake_redis, clock):
    engine = make_engine(lock=RedisInstanceLock(fake_redis, ttl_s=120))
    instance = await engine.start("user-onboarding", PAYLOAD)
    assert not any(key.startswith("workflow:lock:") for key in fake_redis.store)

    await fake_redis.set_if_absent(f"workflow:lock:{instance.id}", "other-worker", 120)
    clock.advance(days=8)
    await engine.resume_due()

    current = await engine.get_status(instance.id)
    assert current.waiting_for == "profile_completed"


@pytest.mark.asyncio
async def test_list_active_excludes_finished(engine):
    live = await engine.start("user-onboarding", PAYLOAD)
    done = await engine.start("user-onboarding", PAYLOAD)
    await engine.cancel(done.id)

    assert [i.id for i in await engine.list_active()] == [live.id]


@pytest.mark.asyncio
async def test_waits_work_with_json_logging_configured(engine):
    setup_logging("INFO")

    instance = await engine.start("user-onboarding", PAYLOAD)
    assert instance.status == WorkflowStatus.WAITING
    assert await engine.send_event(instance.id, "profile_completed")

    current = await engine.get_status(instance.id)
    assert current.waiting_for == "first_contribution"


@pytest.mark.asyncio
async def test_cancel_committed_mid_advance_sticks(
    engine, workflow_store, clock, jobs_queue, monkeypatch
):
    instance = await engine.start("user-onboarding", PAYLOAD)
    await workflow_store.record_event(
        WorkflowEvent(instance_id=instance.id, event_name="profile_completed", received_at=clock.now)
    )

    original_get = workflow_store.get_instance
    cancelled = {"done": False}

    async def _read_then_cancel(instance_id):
        current = await original_get(instance_id)
        if not cancelled["done"]:
            cancelled["done"] = True
            await engine.cancel(instance_id)
        return current

    monkeypatch.setattr(workflow_store, "get_instance", _read_then_cancel)
    await engine.advance(instance.id)

    current = await engine.get_status(instance.id)
    assert current.status == WorkflowStatus.CANCELLED
    assert _awards(jobs_queue, "profile_completed") == []


@pytest.mark.asyncio
async def test_finished_instance_is_never_rewritten(engine, workflow_store, clock):
    instance = await engine.start("user-onboarding", PAYLOAD)
    await engine.cancel(instance.id)

    updated = await workflow_store.update_instance(
        instance.id, now=clock.now, status=WorkflowStatus.WAITING
    )

    assert updated is None
    assert (await engine.get_status(instance.id)).status == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_event_delivered_while_suspending_is_not_lost(
    engine, workflow_store, clock, jobs_queue, monkeypatch
):
    original_get_event = workflow_store.get_event
    delivered = {"done": False}

    async def _deliver_after_read(instance_id, event_name):
        event = await original_get_event(instance_id, event_name)
        if event is None and event_name == "profile_completed" and not delivered["done"]:
            delivered["done"] = True
            # The instance is still running here, so send_event only records it
            assert await engine.send_event(instance_id, "profile_completed")
        return event

    monkeypatch.setattr(workflow_store, "get_event", _deliver_after_read)
    instance = await engine.start("user-onboarding", PAYLOAD)

    assert instance.status == WorkflowStatus.WAITING
    assert instance.waiting_for == "first_contribution"
    assert len(_awards(jobs_queue, "profile_completed")) == 1


@pytest.mark.asyncio
async def test_instance_lock_is_token_checked(fake_redis):
    lock = RedisInstanceLock(fake_redis, ttl_s=120)

    held = await lock.acquire("wf-9")
    assert held is not None
    assert await lock.acquire("wf-9") is None

    # Expired and taken over by another process: releasing must not delete it
    fake_redis.store["workflow:lock:wf-9"] = "other-worker"
    await lock.release(held)
    assert fake_redis.store["workflow:lock:wf-9"] == "other-worker"

    del fake_redis.store["workflow:lock:wf-9"]
    second = await lock.acquire("wf-9")
    await lock.release(second)
    assert "workflow:lock:wf-9" not in fake_redis.store
