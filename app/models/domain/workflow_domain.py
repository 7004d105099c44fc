"""
Domain models for durable workflows.

Rows of workflow_instances, workflow_steps and workflow_events map onto
these dataclasses; the engine only ever talks to the store in these terms.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


ACTIVE_STATUSES = (WorkflowStatus.PENDING, WorkflowStatus.RUNNING, WorkflowStatus.WAITING)


class StepStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"


@dataclass(slots=True)
class WorkflowInstance:
    """Represents a workflow_instances row."""

    id: str
    workflow_name: str
    status: WorkflowStatus
    payload: dict[str, Any]
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    output: dict[str, Any] | None = None
    waiting_for: str | None = None
    wait_deadline: datetime | None = None


@dataclass(slots=True)
class StepRecord:
    """Represents a workflow_steps row, one per (instance, step name)."""

    instance_id: str
    step_name: str
    status: StepStatus
    started_at: datetime
    result: Any = None
    attempts: int = 0
    deadline: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class WorkflowEvent:
    """An external event delivered to one instance. First delivery wins."""

    instance_id: str
    event_name: str
    received_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class WaitResult:
    outcome: Literal["event", "timeout"]
    payload: dict[str, Any] | None = None

    @property
    def timed_out(self) -> bool:
        return self.outcome == "timeout"


# =================================================================
# Onboarding payloads
# =================================================================


class OnboardingPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: str
    full_name: str = Field(alias="fullName")
    user_type: Literal["individual", "business"] = Field(alias="userType")


# =================================================================
# Submission review payloads
# =================================================================


class ListingReviewPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    listing_id: str = Field(alias="listingId")
    user_id: str = Field(alias="userId")
    business_name: str = Field(alias="businessName")
    category: str


class ContentReviewPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content_id: str = Field(alias="contentId")
    user_id: str = Field(alias="userId")
    title: str
    content_type: str = Field(alias="contentType")


class ApprovalDecision(BaseModel):
    """Payload of the approval-decision event sent by a moderator."""

    approved: bool
    reason: str | None = None
    feedback: str | None = None
