"""
Queue helpers for sending messages to the background workers.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from app.infrastructure.observability.logging import get_logger
from app.models.domain.queue_domain import (
    AwardUbuntuPointsPayload,
    EmailNotificationPayload,
    IncrementViewCountPayload,
    InAppNotificationPayload,
    JobType,
    LogActivityPayload,
    NotificationType,
    QueueMessage,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _timestamp(value: datetime) -> str:
    # Millisecond ISO format with Z, same as the JS producers
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class QueueProducer:
    """Builds envelopes and sends them to the jobs or notifications queue."""

    def __init__(self, jobs_queue, notifications_queue, clock: Callable[[], datetime] = _utcnow):
        self._jobs = jobs_queue
        self._notifications = notifications_queue
        self._clock = clock

    def _envelope(self, message_type: str, payload: BaseModel | dict[str, Any]) -> QueueMessage:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        return QueueMessage(type=message_type, payload=payload, timestamp=_timestamp(self._clock()))

    async def enqueue_job(self, job_type: JobType, payload: BaseModel | dict[str, Any]) -> QueueMessage:
        message = self._envelope(job_type.value, payload)
        await self._jobs.send(message)
        logger.debug("Job enqueued", job_type=job_type.value)
        return message

    async def enqueue_notification(
        self, notification_type: NotificationType, payload: BaseModel | dict[str, Any]
    ) -> QueueMessage:
        message = self._envelope(notification_type.value, payload)
        await self._notifications.send(message)
        logger.debug("Notification enqueued", notification_type=notification_type.value)
        return message

    # Typed helpers

    async def queue_view_count_increment(self, table: str, entity_id: str) -> QueueMessage:
        return await self.enqueue_job(
            JobType.INCREMENT_VIEW_COUNT, IncrementViewCountPayload(table=table, id=entity_id)
        )

    async def queue_activity_log(
        self,
        user_id: str,
        activity_type: str,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> QueueMessage:
        return await self.enqueue_job(
            JobType.LOG_ACTIVITY,
            LogActivityPayload(
                user_id=user_id,
                activity_type=activity_type,
                metadata=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
            ),
        )

    async def queue_ubuntu_points_award(
        self,
        user_id: str,
        contribution_type: str,
        points: int,
        details: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QueueMessage:
        return await self.enqueue_job(
            JobType.AWARD_UBUNTU_POINTS,
            AwardUbuntuPointsPayload(
                user_id=user_id,
                contribution_type=contribution_type,
                points=points,
                details=details,
                metadata=metadata,
            ),
        )

    async def queue_email_notification(
        self, to: str, notification_type: NotificationType, data: dict[str, Any]
    ) -> QueueMessage:
        return await self.enqueue_notification(
            notification_type,
            EmailNotificationPayload(to=to, type=notification_type, data=data),
        )

    async def queue_in_app_notification(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        action_url: str | None = None,
    ) -> QueueMessage:
        return await self.enqueue_notification(
            notification_type,
            InAppNotificationPayload(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                action_url=action_url,
            ),
        )
