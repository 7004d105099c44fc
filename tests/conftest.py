import uuid
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest
from redis.exceptions import LockNotOwnedError

from app.config import settings
from app.jobs.dependencies import JobDependencies
from app.models.domain.workflow_domain import WorkflowInstance, WorkflowStatus
from app.repositories.profile_repository import ProfileRepositoryError, ScoreChange
from app.services.dedupe_store import DedupeStore
from app.services.queue_service import QueueProducer
from app.workflows.engine import WorkflowEngine
from app.workflows.onboarding import OnboardingWorkflow
from app.workflows.review import ContentReviewWorkflow, ListingReviewWorkflow


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.lists: dict[str, list[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def ping(self) -> bool:
        return True

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        self.ttls.pop(key, None)
        return self.store.pop(key, None) is not None

    async def lock(self, name: str, ttl_s: int) -> "FakeLock":
        return FakeLock(self, name, ttl_s)

    async def lpush(self, key: str, value: str) -> int:
        items = self.lists.setdefault(key, [])
        items.insert(0, value)
        return len(items)

    async def move_tail_to_head(
        self, source: str, destination: str, timeout_s: float | None = None
    ) -> str | None:
        items = self.lists.get(source)
        if not items:
            return None
        value = items.pop()
        self.lists.setdefault(destination, []).insert(0, value)
        return value

    async def lrem(self, key: str, value: str, count: int = 1) -> int:
        items = self.lists.get(key, [])
        removed = 0
        while value in items and removed < count:
            items.remove(value)
            removed += 1
        return removed

    async def llen(self, key: str) -> int:
        return len(self.lists.get(key, []))

    async def zadd(self, key: str, member: str, score: float) -> int:
        zset = self.zsets.setdefault(key, {})
        added = member not in zset
        zset[member] = score
        return int(added)

    async def zpop_due(self, key: str, max_score: float, limit: int = 100) -> list[str]:
        zset = self.zsets.get(key, {})
        due = sorted((score, member) for member, score in zset.items() if score <= max_score)
        members = [member for _, member in due[:limit]]
        for member in members:
            del zset[member]
        return members


class FakeLock:
    """Mirrors redis.asyncio.lock.Lock: token-checked, non-blocking acquire."""

    def __init__(self, redis: FakeRedis, name: str, ttl_s: int):
        self.redis = redis
        self.name = name
        self.ttl_s = ttl_s
        self.token = uuid.uuid4().hex

    async def acquire(self, blocking: bool = True) -> bool:
        return await self.redis.set_if_absent(self.name, self.token, self.ttl_s)

    async def release(self) -> None:
        if self.redis.store.get(self.name) != self.token:
            raise LockNotOwnedError("Cannot release a lock that's no longer owned")
        await self.redis.delete(self.name)


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingQueue:
    """Stands in for RedisQueue on the producer side."""

    def __init__(self, name: str):
        self.name = name
        self.sent = []
        self.fail_with: Exception | None = None

    async def send(self, message) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(message)

    def of_type(self, message_type: str) -> list:
        return [m for m in self.sent if m.type == message_type]


class FakeProfileRepository:
    def __init__(self):
        self.scores: dict[str, int] = {}
        self.ledger: list[dict] = []
        self.onboarded: dict[str, datetime] = {}
        self.emails: dict[str, str] = {}

    async def get_email(self, user_id: str) -> str | None:
        return self.emails.get(user_id)

    async def award_points(self, user_id, contribution_type, points, details=None, metadata=None):
        if user_id not in self.scores:
            raise ProfileRepositoryError(
                f"Profile {user_id} not found", operation="award_points", recoverable=False
            )
        old = self.scores[user_id]
        self.scores[user_id] = old + points
        self.ledger.append(
            {
                "user_id": user_id,
                "contribution_type": contribution_type,
                "points_earned": points,
                "details": details,
                "metadata": metadata,
            }
        )
        return ScoreChange(user_id=user_id, old_score=old, new_score=old + points)

    async def mark_onboarding_completed(self, user_id: str, completed_at: datetime) -> bool:
        if user_id not in self.scores:
            return False
        self.onboarded.setdefault(user_id, completed_at)
        return True

    async def iter_scores(self, batch_size: int = 500):
        rows = [{"id": uid, "ubuntu_score": score} for uid, score in sorted(self.scores.items())]
        for i in range(0, len(rows), batch_size):
            yield rows[i : i + batch_size]


class FakeActivityRepository:
    def __init__(self):
        self.activities: list[dict] = []
        self.fail_with: Exception | None = None
        self.deleted_before: list[datetime] = []

    async def log_activity(self, user_id, activity_type, metadata=None, ip_address=None, user_agent=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.activities.append(
            {
                "user_id": user_id,
                "activity_type": activity_type,
                "metadata": metadata,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
        )

    async def delete_older_than(self, cutoff: datetime) -> int:
        self.deleted_before.append(cutoff)
        return 3


class FakeContentRepository:
    def __init__(self):
        self.view_counts: dict[tuple[str, str], int] = {}
        self.fail_with: Exception | None = None

    async def increment_view_count(self, table: str, entity_id: str) -> int | None:
        if self.fail_with is not None:
            raise self.fail_with
        key = (table, entity_id)
        if key not in self.view_counts:
            return None
        self.view_counts[key] += 1
        return self.view_counts[key]


class FakeSubscriptionRepository:
    def __init__(self):
        self.subscriptions: dict[str, dict] = {}

    async def upsert_subscription(self, subscription_id, customer_id, status) -> None:
        self.subscriptions[subscription_id] = {"customer_id": customer_id, "status": status}


class FakeSubmissionRepository:
    def __init__(self):
        self.statuses: dict[tuple[str, str], str] = {}
        self.published: set[tuple[str, str]] = set()
        self.unified: dict[tuple[str, str], dict] = {}

    async def set_status(self, table, submission_id, status, *, stamp_published=False) -> bool:
        found = (table, submission_id) in self.statuses
        self.statuses[(table, submission_id)] = status
        if stamp_published:
            self.published.add((table, submission_id))
        return found

    async def upsert_unified(self, reference_id, submission_type, user_id, title, metadata=None):
        self.unified[(reference_id, submission_type)] = {
            "user_id": user_id,
            "title": title,
            "status": "submitted",
            "metadata": metadata,
            "reviewer_notes": None,
        }

    async def record_review(self, reference_id, submission_type, status, reviewer_notes=None):
        row = self.unified[(reference_id, submission_type)]
        row["status"] = status
        if reviewer_notes is not None:
            row["reviewer_notes"] = reviewer_notes


_UNSET = object()


class InMemoryWorkflowStore:
    """Same surface as WorkflowRepository, backed by dicts."""

    def __init__(self):
        self.instances: dict[str, WorkflowInstance] = {}
        self.steps: dict[tuple[str, str], object] = {}
        self.events: dict[tuple[str, str], object] = {}

    async def create_instance(self, instance_id, workflow_name, payload, now):
        instance = WorkflowInstance(
            id=instance_id,
            workflow_name=workflow_name,
            status=WorkflowStatus.PENDING,
            payload=payload,
            started_at=now,
            updated_at=now,
        )
        self.instances[instance_id] = instance
        return replace(instance)

    async def get_instance(self, instance_id):
        instance = self.instances.get(instance_id)
        return replace(instance) if instance else None

    async def update_instance(
        self,
        instance_id,
        *,
        now,
        status,
        error=_UNSET,
        output=_UNSET,
        completed_at=_UNSET,
        waiting_for=_UNSET,
        wait_deadline=_UNSET,
    ):
        if self.instances[instance_id].status.is_terminal:
            return None
        changes = {"status": status, "updated_at": now}
        for name, value in (
            ("error", error),
            ("output", output),
            ("completed_at", completed_at),
            ("waiting_for", waiting_for),
            ("wait_deadline", wait_deadline),
        ):
            if value is not _UNSET:
                changes[name] = value
        self.instances[instance_id] = replace(self.instances[instance_id], **changes)
        return replace(self.instances[instance_id])

    async def list_instances(self, statuses, limit=100):
        wanted = set(statuses)
        matches = [i for i in self.instances.values() if i.status in wanted]
        return [replace(i) for i in sorted(matches, key=lambda i: i.started_at)[:limit]]

    async def list_stale(self, statuses, updated_before, limit=100):
        wanted = set(statuses)
        matches = [
            i for i in self.instances.values() if i.status in wanted and i.updated_at < updated_before
        ]
        return [replace(i) for i in sorted(matches, key=lambda i: i.updated_at)[:limit]]

    async def list_due_waits(self, now, limit=100):
        due = [
            i
            for i in self.instances.values()
            if i.status == WorkflowStatus.WAITING and i.wait_deadline and i.wait_deadline <= now
        ]
        return [replace(i) for i in due[:limit]]

    async def get_step(self, instance_id, step_name):
        step = self.steps.get((instance_id, step_name))
        return replace(step) if step else None

    async def save_step(self, step) -> None:
        self.steps[(step.instance_id, step.step_name)] = replace(step)

    async def record_event(self, event) -> bool:
        key = (event.instance_id, event.event_name)
        if key in self.events:
            return False
        self.events[key] = replace(event)
        return True

    async def get_event(self, instance_id, event_name):
        event = self.events.get((instance_id, event_name))
        return replace(event) if event else None


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jobs_queue():
    return RecordingQueue("jobs")


@pytest.fixture
def notifications_queue():
    return RecordingQueue("notifications")


@pytest.fixture
def producer(jobs_queue, notifications_queue, clock):
    return QueueProducer(jobs_queue, notifications_queue, clock=clock)


@pytest.fixture
def profiles():
    return FakeProfileRepository()


@pytest.fixture
def job_deps(fake_redis, profiles, producer, clock):
    return JobDependencies(
        dedupe=DedupeStore(fake_redis, ttl_s=3600, in_flight_grace_s=300),
        profiles=profiles,
        activity=FakeActivityRepository(),
        content=FakeContentRepository(),
        subscriptions=FakeSubscriptionRepository(),
        producer=producer,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def workflow_store():
    return InMemoryWorkflowStore()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def submissions():
    return FakeSubmissionRepository()


@pytest.fixture
def make_engine(workflow_store, producer, profiles, submissions, clock, sleeps):
    """Build an engine over the shared store; calling it twice simulates a restart."""
    counter = {"n": 0}

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    def _id() -> str:
        counter["n"] += 1
        return f"wf-{counter['n']}"

    def _make(lock=None, workflow_producer=None):
        wf_producer = workflow_producer or producer
        return WorkflowEngine(
            workflow_store,
            [
                OnboardingWorkflow(wf_producer, profiles),
                ListingReviewWorkflow(wf_producer, profiles, submissions),
                ContentReviewWorkflow(wf_producer, profiles, submissions),
            ],
            lock=lock,
            clock=clock,
            sleep=_sleep,
            id_factory=_id,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
