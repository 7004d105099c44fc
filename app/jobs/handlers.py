"""
Handlers for every JobType.

Each handler receives the validated payload model and the injected
dependencies, and returns a small summary dict for logging. Raising means
the message is retried.
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from app.infrastructure.observability.logging import get_logger
from app.jobs.dependencies import JobDependencies
from app.models.domain.queue_domain import (
    AwardUbuntuPointsPayload,
    CleanupExpiredSessionsPayload,
    IncrementViewCountPayload,
    JobType,
    LogActivityPayload,
    NotificationType,
    RecalculateUbuntuLevelsPayload,
    SyncStripeSubscriptionPayload,
    UpdateSearchIndexPayload,
)
from app.services.ubuntu_points import check_level_up, get_ubuntu_level

logger = get_logger(__name__)

JobHandler = Callable[[Any, JobDependencies], Awaitable[dict[str, Any]]]


async def increment_view_count(
    payload: IncrementViewCountPayload, deps: JobDependencies
) -> dict[str, Any]:
    view_count = await deps.content.increment_view_count(payload.table, payload.id)
    if view_count is None:
        logger.warning("View count target not found", table=payload.table, entity_id=payload.id)
    else:
        logger.info(
            "Incremented view count", table=payload.table, entity_id=payload.id, view_count=view_count
        )
    return {"view_count": view_count}


async def log_activity(payload: LogActivityPayload, deps: JobDependencies) -> dict[str, Any]:
    # Telemetry is best-effort: a failed insert never fails the job
    try:
        await deps.activity.log_activity(
            payload.user_id,
            payload.activity_type,
            payload.metadata,
            payload.ip_address,
            payload.user_agent,
        )
    except Exception as e:
        logger.error(
            "Failed to log activity",
            user_id=payload.user_id,
            activity_type=payload.activity_type,
            error=str(e),
        )
        return {"logged": False}

    logger.info("Logged activity", user_id=payload.user_id, activity_type=payload.activity_type)
    return {"logged": True}


async def award_ubuntu_points(
    payload: AwardUbuntuPointsPayload, deps: JobDependencies
) -> dict[str, Any]:
    change = await deps.profiles.award_points(
        payload.user_id,
        payload.contribution_type,
        payload.points,
        payload.details,
        payload.metadata,
    )
    logger.info(
        "Awarded Ubuntu points",
        user_id=payload.user_id,
        contribution_type=payload.contribution_type,
        points=payload.points,
        old_score=change.old_score,
        new_score=change.new_score,
    )

    level_up = check_level_up(change.old_score, change.new_score)
    notified = False
    if level_up.leveled_up:
        logger.info(
            "User leveled up", user_id=payload.user_id, new_level=level_up.new_level.value
        )
        # Points are already committed; failing here would award them twice on retry
        try:
            await deps.producer.queue_in_app_notification(
                payload.user_id,
                NotificationType.UBUNTU_LEVEL_UP,
                title=f"You are now a {level_up.new_level_name}",
                message=f"Your Ubuntu score reached {change.new_score}. I am because we are.",
                action_url="/community/leaderboard",
            )
            notified = True
        except Exception as e:
            logger.error(
                "Failed to queue level-up notification",
                user_id=payload.user_id,
                new_level=level_up.new_level.value,
                error=str(e),
            )

    return {
        "old_score": change.old_score,
        "new_score": change.new_score,
        "leveled_up": level_up.leveled_up,
        "level_up_notified": notified,
    }


async def sync_stripe_subscription(
    payload: SyncStripeSubscriptionPayload, deps: JobDependencies
) -> dict[str, Any]:
    await deps.subscriptions.upsert_subscription(
        payload.subscription_id, payload.customer_id, payload.status
    )
    logger.info(
        "Synced subscription", subscription_id=payload.subscription_id, status=payload.status
    )
    return {"subscription_id": payload.subscription_id, "status": payload.status}


async def update_search_index(
    payload: UpdateSearchIndexPayload, deps: JobDependencies
) -> dict[str, Any]:
    # TODO: push documents to the search backend once one is provisioned
    logger.info("Search index update requested", request=payload.model_dump(exclude_none=True))
    return {"indexed": False}


async def cleanup_expired_sessions(
    payload: CleanupExpiredSessionsPayload, deps: JobDependencies
) -> dict[str, Any]:
    cutoff = deps.clock() - timedelta(days=deps.settings.ACTIVITY_RETENTION_DAYS)
    deleted = await deps.activity.delete_older_than(cutoff)
    logger.info("Cleaned up expired sessions", cutoff=cutoff.isoformat(), deleted=deleted)
    return {"deleted": deleted}


async def recalculate_ubuntu_levels(
    payload: RecalculateUbuntuLevelsPayload, deps: JobDependencies
) -> dict[str, Any]:
    distribution: dict[str, int] = {}
    total = 0
    async for batch in deps.profiles.iter_scores(deps.settings.LEVEL_RECALC_BATCH_SIZE):
        for row in batch:
            level = get_ubuntu_level(row["ubuntu_score"]).level.value
            distribution[level] = distribution.get(level, 0) + 1
        total += len(batch)

    logger.info("Recalculated levels", users=total, distribution=distribution)
    return {"users": total, "distribution": distribution}


JOB_HANDLERS: dict[JobType, JobHandler] = {
    JobType.INCREMENT_VIEW_COUNT: increment_view_count,
    JobType.LOG_ACTIVITY: log_activity,
    JobType.AWARD_UBUNTU_POINTS: award_ubuntu_points,
    JobType.SYNC_STRIPE_SUBSCRIPTION: sync_stripe_subscription,
    JobType.UPDATE_SEARCH_INDEX: update_search_index,
    JobType.CLEANUP_EXPIRED_SESSIONS: cleanup_expired_sessions,
    JobType.RECALCULATE_UBUNTU_LEVELS: recalculate_ubuntu_levels,
}

_missing = set(JobType) - set(JOB_HANDLERS)
if _missing:
    raise RuntimeError(f"Job types without a handler: {sorted(t.value for t in _missing)}")
