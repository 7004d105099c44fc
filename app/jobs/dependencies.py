"""
Explicit wiring for the job processor and workflow engine.

Handlers and workflows receive their collaborators through these objects
instead of reaching for globals, so tests can hand in fakes.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from app.config import Settings, settings
from app.infrastructure.queue.redis_queue import RedisQueue
from app.repositories.activity_repository import (
    ActivityRepository,
    ContentRepository,
    SubscriptionRepository,
)
from app.repositories.profile_repository import ProfileRepository
from app.repositories.submission_repository import SubmissionRepository
from app.repositories.workflow_repository import WorkflowRepository
from app.services.dedupe_store import DedupeStore
from app.services.queue_service import QueueProducer
from app.services.redis_client import fast_redis
from app.workflows.engine import RedisInstanceLock, WorkflowEngine
from app.workflows.onboarding import OnboardingWorkflow
from app.workflows.review import ContentReviewWorkflow, ListingReviewWorkflow


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class JobDependencies:
    dedupe: DedupeStore
    profiles: ProfileRepository
    activity: ActivityRepository
    content: ContentRepository
    subscriptions: SubscriptionRepository
    producer: QueueProducer
    settings: Settings = field(default_factory=lambda: settings)
    clock: Callable[[], datetime] = _utcnow

    @classmethod
    def from_globals(cls, redis_client=fast_redis) -> "JobDependencies":
        """Wire the production repositories, queues and Redis client."""
        return cls(
            dedupe=DedupeStore(
                redis_client,
                ttl_s=settings.JOB_DEDUPE_TTL_S,
                in_flight_grace_s=settings.JOB_INFLIGHT_GRACE_S,
            ),
            profiles=ProfileRepository(),
            activity=ActivityRepository(),
            content=ContentRepository(),
            subscriptions=SubscriptionRepository(),
            producer=build_producer(redis_client),
        )


def build_queue(name: str, redis_client=fast_redis) -> RedisQueue:
    return RedisQueue(
        redis_client,
        name,
        max_retries=settings.JOB_MAX_RETRIES,
        retry_base_delay_s=settings.JOB_RETRY_BASE_DELAY_S,
    )


def build_producer(redis_client=fast_redis) -> QueueProducer:
    return QueueProducer(
        build_queue(settings.JOBS_QUEUE_NAME, redis_client),
        build_queue(settings.NOTIFICATIONS_QUEUE_NAME, redis_client),
    )


def build_workflow_engine(redis_client=fast_redis) -> WorkflowEngine:
    producer = build_producer(redis_client)
    profiles = ProfileRepository()
    submissions = SubmissionRepository()
    return WorkflowEngine(
        WorkflowRepository(),
        [
            OnboardingWorkflow(producer, profiles),
            ListingReviewWorkflow(producer, profiles, submissions),
            ContentReviewWorkflow(producer, profiles, submissions),
        ],
        lock=RedisInstanceLock(redis_client, ttl_s=settings.WORKFLOW_LOCK_TTL_S),
    )
