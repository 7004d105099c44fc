"""
Queue message envelope and typed job payloads.

The wire format stays camelCase JSON so producers outside this service
(API routes, other workers) can keep sending the same envelopes.
"""

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    """Every job the processor knows how to run."""

    INCREMENT_VIEW_COUNT = "increment-view-count"
    LOG_ACTIVITY = "log-activity"
    AWARD_UBUNTU_POINTS = "award-ubuntu-points"
    SYNC_STRIPE_SUBSCRIPTION = "sync-stripe-subscription"
    UPDATE_SEARCH_INDEX = "update-search-index"
    CLEANUP_EXPIRED_SESSIONS = "cleanup-expired-sessions"
    RECALCULATE_UBUNTU_LEVELS = "recalculate-ubuntu-levels"

    @classmethod
    def parse(cls, value: str) -> "JobType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class NotificationType(str, Enum):
    CONTENT_SUBMITTED = "content-submitted"
    CONTENT_APPROVED = "content-approved"
    CONTENT_REJECTED = "content-rejected"
    LISTING_SUBMITTED = "listing-submitted"
    LISTING_APPROVED = "listing-approved"
    LISTING_REJECTED = "listing-rejected"
    VERIFICATION_STARTED = "verification-started"
    VERIFICATION_PAYMENT_RECEIVED = "verification-payment-received"
    VERIFICATION_APPROVED = "verification-approved"
    VERIFICATION_REJECTED = "verification-rejected"
    SUBSCRIPTION_CREATED = "subscription-created"
    SUBSCRIPTION_CANCELLED = "subscription-cancelled"
    UBUNTU_LEVEL_UP = "ubuntu-level-up"
    WELCOME_EMAIL = "welcome-email"
    PROFILE_REMINDER = "profile-reminder"
    ENGAGEMENT_REMINDER = "engagement-reminder"
    FIRST_CONTRIBUTION_CONGRATS = "first-contribution-congrats"


class QueueMessage(BaseModel):
    """Envelope shared by the jobs and notifications queues."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    payload: Any = None
    timestamp: str
    retry_count: int = Field(default=0, alias="retryCount")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "QueueMessage":
        return cls.model_validate_json(raw)


def canonical_payload(payload: Any) -> str:
    """Stable JSON for fingerprinting: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def build_dedupe_key(message: QueueMessage) -> str:
    """job:{type}:{payload}:{timestamp}. Retries of the same message share a key."""
    return f"job:{message.type}:{canonical_payload(message.payload)}:{message.timestamp}"


# =================================================================
# Job payloads
# =================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


ViewCountTable = Literal["directory_listings", "content_submissions", "travel_businesses"]


class IncrementViewCountPayload(_Payload):
    table: ViewCountTable
    id: str


class LogActivityPayload(_Payload):
    user_id: str = Field(alias="userId")
    activity_type: str = Field(alias="activityType")
    metadata: dict[str, Any] | None = None
    ip_address: str | None = Field(default=None, alias="ipAddress")
    user_agent: str | None = Field(default=None, alias="userAgent")


class AwardUbuntuPointsPayload(_Payload):
    user_id: str = Field(alias="userId")
    contribution_type: str = Field(alias="contributionType")
    points: int
    details: str | None = None
    metadata: dict[str, Any] | None = None


class SyncStripeSubscriptionPayload(_Payload):
    customer_id: str = Field(alias="customerId")
    subscription_id: str = Field(alias="subscriptionId")
    status: str


class UpdateSearchIndexPayload(_Payload):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    entity: str | None = None
    id: str | None = None


class CleanupExpiredSessionsPayload(_Payload):
    model_config = ConfigDict(extra="allow")


class RecalculateUbuntuLevelsPayload(_Payload):
    model_config = ConfigDict(extra="allow")


JOB_PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.INCREMENT_VIEW_COUNT: IncrementViewCountPayload,
    JobType.LOG_ACTIVITY: LogActivityPayload,
    JobType.AWARD_UBUNTU_POINTS: AwardUbuntuPointsPayload,
    JobType.SYNC_STRIPE_SUBSCRIPTION: SyncStripeSubscriptionPayload,
    JobType.UPDATE_SEARCH_INDEX: UpdateSearchIndexPayload,
    JobType.CLEANUP_EXPIRED_SESSIONS: CleanupExpiredSessionsPayload,
    JobType.RECALCULATE_UBUNTU_LEVELS: RecalculateUbuntuLevelsPayload,
}


# =================================================================
# Notification payloads
# =================================================================


class EmailNotificationPayload(_Payload):
    to: str
    type: NotificationType
    data: dict[str, Any] = Field(default_factory=dict)


class InAppNotificationPayload(_Payload):
    user_id: str = Field(alias="userId")
    type: NotificationType
    title: str
    message: str
    action_url: str | None = Field(default=None, alias="actionUrl")


class JobOutcome(str, Enum):
    """Result of handling one queue message."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"  # unknown type or malformed payload
    FAILED = "failed"
    # Another delivery holds the in-flight claim; redeliver later without
    # spending a retry
    DEFERRED = "deferred"

    @property
    def should_ack(self) -> bool:
        return self not in (JobOutcome.FAILED, JobOutcome.DEFERRED)
