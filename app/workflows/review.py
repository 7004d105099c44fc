"""
Moderated submission review workflows.

    initialize -> notify-moderators
    -> wait approval-decision
         approved: publish, award-points, notify-approval
         rejected: reject, notify-rejection

Listings wait up to 7 days for a decision, content up to 14. A review that
gets no decision in time fails the instance and leaves the submission in
the moderation queue.
"""

from datetime import timedelta
from typing import Any

from pydantic import BaseModel

from app.config import settings as default_settings
from app.models.domain.queue_domain import NotificationType, QueueMessage
from app.models.domain.workflow_domain import (
    ApprovalDecision,
    ContentReviewPayload,
    ListingReviewPayload,
)
from app.services.ubuntu_points import UBUNTU_POINTS
from app.workflows.engine import WorkflowContext, WorkflowDefinition, WorkflowError

APPROVAL_DECISION = "approval-decision"


class ReviewTimedOutError(WorkflowError):
    pass


def _sent(message: QueueMessage | None) -> dict[str, Any]:
    if message is None:
        return {"sent": False}
    return {"sent": True, "type": message.type, "timestamp": message.timestamp}


class SubmissionReviewWorkflow(WorkflowDefinition):
    """Shared review flow; subclasses describe their table and notifications."""

    table: str
    submission_type: str
    contribution_type: str
    submitted_notification: NotificationType
    approved_notification: NotificationType
    rejected_notification: NotificationType
    initialize_step: str
    publish_step: str
    reject_step: str
    id_key: str
    initial_status = "pending"
    stamps_published = False
    notes_key = "reason"

    def __init__(self, producer, profiles, submissions, *, timeout: timedelta):
        self._producer = producer
        self._profiles = profiles
        self._submissions = submissions
        self.timeout = timeout

    # Subclass hooks

    def reference_id(self, payload: BaseModel) -> str:
        raise NotImplementedError

    def title(self, payload: BaseModel) -> str:
        raise NotImplementedError

    def moderator_data(self, payload: BaseModel) -> dict[str, Any]:
        raise NotImplementedError

    def approved_data(self, payload: BaseModel) -> dict[str, Any]:
        raise NotImplementedError

    def rejected_data(self, payload: BaseModel, decision: ApprovalDecision) -> dict[str, Any]:
        raise NotImplementedError

    def reviewer_notes(self, decision: ApprovalDecision) -> str | None:
        return decision.reason or decision.feedback

    def unified_metadata(self, payload: BaseModel) -> dict[str, Any] | None:
        return None

    def award_details(self, payload: BaseModel) -> str:
        raise NotImplementedError

    # Flow

    async def run(self, ctx: WorkflowContext, payload: BaseModel) -> dict[str, Any]:
        reference_id = self.reference_id(payload)
        id_key = self.id_key

        await ctx.step(self.initialize_step, lambda: self._initialize(payload))
        await ctx.step(
            "notify-moderators",
            lambda: self._notify_moderators(payload),
        )

        wait = await ctx.wait_for_event(APPROVAL_DECISION, self.timeout)
        if wait.timed_out:
            raise ReviewTimedOutError(
                f"No approval decision for {self.submission_type} {reference_id} "
                f"within {self.timeout.days} days"
            )
        decision = ApprovalDecision.model_validate(wait.payload or {})

        if decision.approved:
            await ctx.step(self.publish_step, lambda: self._set_status(payload, "published"))
            await ctx.step("award-points", lambda: self._award(payload))
            await ctx.step(
                "notify-approval",
                lambda: self._email_owner(
                    payload, self.approved_notification, self.approved_data(payload)
                ),
            )
            return {"status": "published", id_key: reference_id}

        await ctx.step(
            self.reject_step,
            lambda: self._set_status(payload, "rejected", self.reviewer_notes(decision)),
        )
        await ctx.step(
            "notify-rejection",
            lambda: self._email_owner(
                payload, self.rejected_notification, self.rejected_data(payload, decision)
            ),
        )
        return {
            "status": "rejected",
            id_key: reference_id,
            self.notes_key: self.reviewer_notes(decision),
        }

    async def _initialize(self, payload: BaseModel) -> dict[str, Any]:
        reference_id = self.reference_id(payload)
        found = await self._submissions.set_status(self.table, reference_id, self.initial_status)
        await self._submissions.upsert_unified(
            reference_id,
            self.submission_type,
            payload.user_id,
            self.title(payload),
            self.unified_metadata(payload),
        )
        return {"found": found}

    async def _notify_moderators(self, payload: BaseModel) -> dict[str, Any]:
        message = await self._producer.enqueue_notification(
            self.submitted_notification, self.moderator_data(payload)
        )
        return _sent(message)

    async def _set_status(
        self, payload: BaseModel, status: str, reviewer_notes: str | None = None
    ) -> dict[str, Any]:
        reference_id = self.reference_id(payload)
        await self._submissions.set_status(
            self.table,
            reference_id,
            status,
            stamp_published=self.stamps_published and status == "published",
        )
        await self._submissions.record_review(
            reference_id, self.submission_type, status, reviewer_notes
        )
        return {"status": status}

    async def _award(self, payload: BaseModel) -> dict[str, Any]:
        message = await self._producer.queue_ubuntu_points_award(
            payload.user_id,
            self.contribution_type,
            UBUNTU_POINTS[self.contribution_type],
            details=self.award_details(payload),
            metadata={self.id_key: self.reference_id(payload)},
        )
        return _sent(message)

    async def _email_owner(
        self, payload: BaseModel, notification_type: NotificationType, data: dict[str, Any]
    ) -> dict[str, Any]:
        email = await self._profiles.get_email(payload.user_id)
        if not email:
            return _sent(None)
        message = await self._producer.queue_email_notification(email, notification_type, data)
        return _sent(message)


class ListingReviewWorkflow(SubmissionReviewWorkflow):
    name = "listing-review"
    payload_model = ListingReviewPayload

    table = "directory_listings"
    submission_type = "directory_listing"
    contribution_type = "listing_approved"
    submitted_notification = NotificationType.LISTING_SUBMITTED
    approved_notification = NotificationType.LISTING_APPROVED
    rejected_notification = NotificationType.LISTING_REJECTED
    initialize_step = "initialize-review"
    publish_step = "publish-listing"
    reject_step = "reject-listing"
    id_key = "listingId"

    def __init__(self, producer, profiles, submissions, *, settings=default_settings):
        super().__init__(
            producer,
            profiles,
            submissions,
            timeout=timedelta(days=settings.LISTING_REVIEW_TIMEOUT_DAYS),
        )

    def reference_id(self, payload: ListingReviewPayload) -> str:
        return payload.listing_id

    def title(self, payload: ListingReviewPayload) -> str:
        return payload.business_name

    def unified_metadata(self, payload: ListingReviewPayload) -> dict[str, Any]:
        return {"category": payload.category}

    def moderator_data(self, payload: ListingReviewPayload) -> dict[str, Any]:
        return {
            "listingId": payload.listing_id,
            "businessName": payload.business_name,
            "category": payload.category,
            "userId": payload.user_id,
        }

    def award_details(self, payload: ListingReviewPayload) -> str:
        return f'Listing "{payload.business_name}" approved'

    def approved_data(self, payload: ListingReviewPayload) -> dict[str, Any]:
        return {"businessName": payload.business_name, "listingId": payload.listing_id}

    def rejected_data(
        self, payload: ListingReviewPayload, decision: ApprovalDecision
    ) -> dict[str, Any]:
        return {"businessName": payload.business_name, "reason": self.reviewer_notes(decision)}


class ContentReviewWorkflow(SubmissionReviewWorkflow):
    name = "content-review"
    payload_model = ContentReviewPayload

    table = "content_submissions"
    submission_type = "content"
    contribution_type = "content_published"
    submitted_notification = NotificationType.CONTENT_SUBMITTED
    approved_notification = NotificationType.CONTENT_APPROVED
    rejected_notification = NotificationType.CONTENT_REJECTED
    initialize_step = "mark-submitted"
    publish_step = "publish-content"
    reject_step = "reject-content"
    id_key = "contentId"
    initial_status = "submitted"
    stamps_published = True
    notes_key = "feedback"

    def __init__(self, producer, profiles, submissions, *, settings=default_settings):
        super().__init__(
            producer,
            profiles,
            submissions,
            timeout=timedelta(days=settings.CONTENT_REVIEW_TIMEOUT_DAYS),
        )

    def reference_id(self, payload: ContentReviewPayload) -> str:
        return payload.content_id

    def title(self, payload: ContentReviewPayload) -> str:
        return payload.title

    def moderator_data(self, payload: ContentReviewPayload) -> dict[str, Any]:
        return {
            "contentId": payload.content_id,
            "title": payload.title,
            "contentType": payload.content_type,
            "userId": payload.user_id,
        }

    def reviewer_notes(self, decision: ApprovalDecision) -> str | None:
        return decision.feedback or decision.reason

    def award_details(self, payload: ContentReviewPayload) -> str:
        return f'Content "{payload.title}" published'

    def approved_data(self, payload: ContentReviewPayload) -> dict[str, Any]:
        return {"title": payload.title, "contentId": payload.content_id}

    def rejected_data(
        self, payload: ContentReviewPayload, decision: ApprovalDecision
    ) -> dict[str, Any]:
        return {"title": payload.title, "feedback": self.reviewer_notes(decision)}
