# app/models/api/workflow_response.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.models.domain.workflow_domain import WorkflowInstance


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class WorkflowTriggerResponse(_CamelModel):
    """Response for POST /workflows/trigger/{workflow_name}"""

    workflow_id: str = Field(alias="workflowId")
    status: str


class WorkflowActionResponse(BaseModel):
    """Response for signal and cancel"""

    success: bool


class WorkflowStatusResponse(_CamelModel):
    """Response for GET /workflows/status/{workflow_id}"""

    id: str
    workflow_name: str = Field(alias="workflowName")
    status: str
    output: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime = Field(alias="startedAt")
    updated_at: datetime = Field(alias="updatedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    waiting_for: str | None = Field(default=None, alias="waitingFor")
    wait_deadline: datetime | None = Field(default=None, alias="waitDeadline")

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "WorkflowStatusResponse":
        return cls(
            id=instance.id,
            workflow_name=instance.workflow_name,
            status=instance.status.value,
            output=instance.output,
            error=instance.error,
            started_at=instance.started_at,
            updated_at=instance.updated_at,
            completed_at=instance.completed_at,
            waiting_for=instance.waiting_for,
            wait_deadline=instance.wait_deadline,
        )


class ActiveWorkflowsResponse(BaseModel):
    """Response for GET /workflows/active"""

    workflows: list[WorkflowStatusResponse]
