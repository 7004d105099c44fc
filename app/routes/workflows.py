"""
workflows.py
------------
Admin endpoints for durable workflows.

Usage:
    1. POST /workflows/trigger/{workflow_name} - Start an instance
    2. POST /workflows/signal/{workflow_id}/{event_name} - Deliver an event
    3. GET /workflows/status/{workflow_id} - Inspect an instance
    4. POST /workflows/cancel/{workflow_id} - Cancel a live instance
    5. GET /workflows/active - List pending, running and waiting instances
"""

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import ValidationError

from app.infrastructure.observability.logging import get_logger
from app.jobs.dependencies import build_workflow_engine
from app.models.api.workflow_request import WorkflowSignalRequest
from app.models.api.workflow_response import (
    ActiveWorkflowsResponse,
    WorkflowActionResponse,
    WorkflowStatusResponse,
    WorkflowTriggerResponse,
)
from app.workflows.engine import (
    UnknownWorkflowError,
    WorkflowEngine,
    WorkflowNotFoundError,
    WorkflowStateError,
)

router = APIRouter(prefix="/workflows", tags=["workflows"])
logger = get_logger(__name__)


@lru_cache
def get_workflow_engine() -> WorkflowEngine:
    return build_workflow_engine()


@router.post(
    "/trigger/{workflow_name}",
    response_model=WorkflowTriggerResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_workflow(
    workflow_name: str,
    payload: dict[str, Any] = Body(...),
    engine: WorkflowEngine = Depends(get_workflow_engine),
):
    """
    Start a workflow instance and run it up to its first wait.

    Raises:
        400: Unknown workflow name
        422: Payload does not match the workflow's input model
    """
    try:
        instance = await engine.start(workflow_name, payload)
    except UnknownWorkflowError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        ) from e

    logger.info(
        "Workflow triggered",
        workflow=workflow_name,
        instance_id=instance.id,
        status=instance.status.value,
    )
    return WorkflowTriggerResponse(workflow_id=instance.id, status=instance.status.value)


@router.post("/signal/{workflow_id}/{event_name}", response_model=WorkflowActionResponse)
async def signal_workflow(
    workflow_id: str,
    event_name: str,
    request: WorkflowSignalRequest | None = None,
    engine: WorkflowEngine = Depends(get_workflow_engine),
):
    payload = request.payload if request else {}
    try:
        delivered = await engine.send_event(workflow_id, event_name, payload)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    logger.info(
        "Workflow signalled", instance_id=workflow_id, event_name=event_name, delivered=delivered
    )
    return WorkflowActionResponse(success=delivered)


@router.get(
    "/status/{workflow_id}",
    response_model=WorkflowStatusResponse,
    response_model_by_alias=True,
)
async def get_workflow_status(
    workflow_id: str, engine: WorkflowEngine = Depends(get_workflow_engine)
):
    try:
        instance = await engine.get_status(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return WorkflowStatusResponse.from_instance(instance)


@router.post("/cancel/{workflow_id}", response_model=WorkflowActionResponse)
async def cancel_workflow(workflow_id: str, engine: WorkflowEngine = Depends(get_workflow_engine)):
    try:
        await engine.cancel(workflow_id)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except WorkflowStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    logger.info("Workflow cancelled", instance_id=workflow_id)
    return WorkflowActionResponse(success=True)


@router.get("/active", response_model=ActiveWorkflowsResponse, response_model_by_alias=True)
async def list_active_workflows(
    limit: int = Query(100, ge=1, le=1000),
    engine: WorkflowEngine = Depends(get_workflow_engine),
):
    instances = await engine.list_active(limit)
    return ActiveWorkflowsResponse(
        workflows=[WorkflowStatusResponse.from_instance(i) for i in instances]
    )
