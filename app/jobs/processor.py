"""
Job processor: dedupe, validate and dispatch queue messages.

Per message:
    unknown type       -> skipped (ack)
    malformed payload  -> skipped (ack)
    already done       -> duplicate (ack, handler not called)
    in flight elsewhere-> deferred (redelivered later, retry budget untouched)
    handler raised     -> failed (retry, dedupe marker released)
    handler returned   -> processed (ack, marker kept for the window)
"""

import asyncio
import time
import traceback

from pydantic import ValidationError

from app.infrastructure.observability.logging import get_logger, log_job_outcome
from app.jobs.dependencies import JobDependencies
from app.jobs.handlers import JOB_HANDLERS, JobHandler
from app.models.domain.queue_domain import (
    JOB_PAYLOAD_MODELS,
    JobOutcome,
    JobType,
    QueueMessage,
    build_dedupe_key,
)
from app.services.dedupe_store import ClaimResult

logger = get_logger(__name__)


class JobProcessor:
    def __init__(self, deps: JobDependencies, handlers: dict[JobType, JobHandler] | None = None):
        self.deps = deps
        self._handlers = handlers or JOB_HANDLERS
        self._concurrency = max(1, deps.settings.JOB_BATCH_CONCURRENCY)

    async def process_batch(self, messages: list[QueueMessage]) -> list[JobOutcome]:
        """Handle every message independently; outcomes come back in input order."""
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(message: QueueMessage) -> JobOutcome:
            async with semaphore:
                return await self.process_message(message)

        return list(await asyncio.gather(*(_bounded(m) for m in messages)))

    async def process_message(self, message: QueueMessage) -> JobOutcome:
        start = time.perf_counter()
        log = logger.bind(job_type=message.type, timestamp=message.timestamp)

        job_type = JobType.parse(message.type)
        if job_type is None:
            log.warning("Unknown job type, acknowledging without processing")
            return JobOutcome.SKIPPED

        try:
            payload = JOB_PAYLOAD_MODELS[job_type].model_validate(message.payload)
        except ValidationError as e:
            log.warning("Malformed payload, skipping", errors=e.error_count())
            return JobOutcome.SKIPPED

        dedupe_key = build_dedupe_key(message)
        try:
            claim = await self.deps.dedupe.try_claim(dedupe_key)
        except Exception as e:
            log.error("Dedupe check failed", error=str(e))
            return JobOutcome.FAILED

        if claim == ClaimResult.DONE:
            log.info("Skipping duplicate job")
            return JobOutcome.DUPLICATE
        if claim == ClaimResult.IN_FLIGHT:
            log.info("Job already in flight, deferring")
            return JobOutcome.DEFERRED

        handler = self._handlers[job_type]
        try:
            result = await handler(payload, self.deps)
        except Exception as e:
            await self.deps.dedupe.release(dedupe_key)
            log_job_outcome(
                job_type.value,
                JobOutcome.FAILED.value,
                round((time.perf_counter() - start) * 1000, 2),
                error=str(e),
                retry_count=message.retry_count,
                traceback=traceback.format_exc(),
            )
            return JobOutcome.FAILED

        await self.deps.dedupe.mark_done(dedupe_key)
        log_job_outcome(
            job_type.value,
            JobOutcome.PROCESSED.value,
            round((time.perf_counter() - start) * 1000, 2),
            result=result,
        )
        return JobOutcome.PROCESSED
