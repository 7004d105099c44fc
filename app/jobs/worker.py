"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, opens the database pool and Redis connection, and delegates to
the appropriate loop.
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.dependencies import JobDependencies, build_queue, build_workflow_engine
from app.jobs.processor import JobProcessor
from app.jobs.queue_consumer import JobsQueueConsumer
from app.jobs.workflow_timer_job import start_workflow_timer_scheduler
from app.services.redis_client import fast_redis

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


def _install_stop_handlers(stop: Callable[[], None]) -> None:
    """Route SIGTERM/SIGINT to a graceful stop so in-flight batches settle."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop)
        except NotImplementedError:
            logger.warning("Signal handlers unsupported on this platform", signal=sig.name)


async def run_jobs_consumer() -> None:
    consumer = JobsQueueConsumer(
        build_queue(settings.JOBS_QUEUE_NAME),
        JobProcessor(JobDependencies.from_globals()),
    )
    _install_stop_handlers(consumer.stop)
    await consumer.run()


async def run_workflow_timers() -> None:
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event.set)
    await start_workflow_timer_scheduler(build_workflow_engine(), stop_event=stop_event)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "jobs_consumer": run_jobs_consumer,
    "workflow_timers": run_workflow_timers,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "jobs_consumer").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    await db_pool.initialize()
    await fast_redis.initialize()
    try:
        await JOB_REGISTRY[name]()
    finally:
        await fast_redis.close()
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    try:
        asyncio.run(run_worker(job_name))
    except KeyboardInterrupt:
        logger.info("Background worker stopped by user", job=job_name)


if __name__ == "__main__":
    main()
