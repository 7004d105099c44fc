# app/models/api/workflow_request.py
from typing import Any

from pydantic import BaseModel, Field


class WorkflowSignalRequest(BaseModel):
    """Body for POST /workflows/signal/{workflow_id}/{event_name}"""

    payload: dict[str, Any] = Field(default_factory=dict, description="Event data")
