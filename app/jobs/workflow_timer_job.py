"""
Workflow timer sweep.

Picks up instances a crashed process left behind, then periodically
resumes waiting instances whose deadline has passed so their timeout
branch runs. Every cycle also re-sweeps instances stuck in pending or
running for longer than the instance lock TTL.
"""

import asyncio
from datetime import timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.workflows.engine import WorkflowEngine

logger = get_logger(__name__)


async def run_workflow_timer_cycle(
    engine: WorkflowEngine, stale_after: timedelta | None = None
) -> dict[str, int]:
    stale_after = stale_after or timedelta(seconds=settings.WORKFLOW_LOCK_TTL_S)
    recovered = await engine.recover(stale_after)
    resumed = await engine.resume_due()
    if recovered or resumed:
        logger.info("Workflow timer cycle completed", resumed=resumed, recovered=recovered)
    return {"resumed": resumed, "recovered": recovered}


async def start_workflow_timer_scheduler(
    engine: WorkflowEngine,
    interval_s: int | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Recover stranded instances once, then sweep until stop_event is set."""
    interval = interval_s or settings.WORKFLOW_TIMER_INTERVAL_S
    stop_event = stop_event or asyncio.Event()
    logger.info("Starting workflow timer scheduler", interval_seconds=interval)

    recovered = await engine.recover()
    if recovered:
        logger.warning("Recovered stranded workflow instances", count=recovered)

    while not stop_event.is_set():
        try:
            await run_workflow_timer_cycle(engine)
        except Exception as e:
            logger.error(
                "Error in workflow timer scheduler", error=str(e), error_type=type(e).__name__
            )
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except TimeoutError:
            pass

    logger.info("Workflow timer scheduler stopped")
