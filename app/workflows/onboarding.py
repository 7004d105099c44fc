"""
User onboarding workflow.

    send-welcome -> award-first-login
    -> wait profile_completed (7 days)
         event:   award-profile-points
         timeout: send-profile-reminder
    -> wait first_contribution (30 days)
         event:   award-contribution-points, send-congrats
         timeout: send-engagement-reminder
    -> complete-onboarding

Every step is an enqueue or an upsert, so retrying a step is harmless.
"""

from datetime import timedelta
from typing import Any

from app.config import settings as default_settings
from app.models.domain.queue_domain import NotificationType, QueueMessage
from app.models.domain.workflow_domain import OnboardingPayload
from app.services.ubuntu_points import UBUNTU_POINTS
from app.workflows.engine import WorkflowContext, WorkflowDefinition

PROFILE_COMPLETED = "profile_completed"
FIRST_CONTRIBUTION = "first_contribution"


def _sent(message: QueueMessage) -> dict[str, str]:
    return {"type": message.type, "timestamp": message.timestamp}


class OnboardingWorkflow(WorkflowDefinition):
    name = "user-onboarding"
    payload_model = OnboardingPayload

    def __init__(self, producer, profiles, *, settings=default_settings):
        self._producer = producer
        self._profiles = profiles
        self.profile_timeout = timedelta(days=settings.ONBOARDING_PROFILE_TIMEOUT_DAYS)
        self.contribution_timeout = timedelta(days=settings.ONBOARDING_CONTRIBUTION_TIMEOUT_DAYS)

    async def _email(self, payload: OnboardingPayload, notification_type: NotificationType, **data):
        message = await self._producer.queue_email_notification(
            payload.email, notification_type, {"fullName": payload.full_name, **data}
        )
        return _sent(message)

    async def _award(self, payload: OnboardingPayload, contribution_type: str, details: str):
        message = await self._producer.queue_ubuntu_points_award(
            payload.user_id,
            contribution_type,
            UBUNTU_POINTS[contribution_type],
            details=details,
        )
        return _sent(message)

    async def run(self, ctx: WorkflowContext, payload: OnboardingPayload) -> dict[str, Any]:
        await ctx.step(
            "send-welcome",
            lambda: self._email(payload, NotificationType.WELCOME_EMAIL, userType=payload.user_type),
        )
        await ctx.step(
            "award-first-login",
            lambda: self._award(payload, "first_login", "Welcome to Nyuchi!"),
        )

        profile = await ctx.wait_for_event(PROFILE_COMPLETED, self.profile_timeout)
        if profile.timed_out:
            await ctx.step(
                "send-profile-reminder",
                lambda: self._email(payload, NotificationType.PROFILE_REMINDER),
            )
        else:
            await ctx.step(
                "award-profile-points",
                lambda: self._award(payload, "profile_completed", "Profile completed"),
            )

        contribution = await ctx.wait_for_event(FIRST_CONTRIBUTION, self.contribution_timeout)
        if contribution.timed_out:
            await ctx.step(
                "send-engagement-reminder",
                lambda: self._email(payload, NotificationType.ENGAGEMENT_REMINDER),
            )
        else:
            await ctx.step(
                "award-contribution-points",
                lambda: self._award(
                    payload, "first_contribution", "First community contribution"
                ),
            )
            await ctx.step(
                "send-congrats",
                lambda: self._email(payload, NotificationType.FIRST_CONTRIBUTION_CONGRATS),
            )

        completed_at = ctx.now()
        await ctx.step(
            "complete-onboarding",
            lambda: self._complete(payload.user_id, completed_at),
        )

        return {"status": "completed", "userId": payload.user_id}

    async def _complete(self, user_id: str, completed_at) -> dict[str, Any]:
        updated = await self._profiles.mark_onboarding_completed(user_id, completed_at)
        return {"profileUpdated": updated, "completedAt": completed_at.isoformat()}
