"""
Jobs queue consumer.

Pulls batches off the jobs queue, hands them to the JobProcessor and acks
or retries each envelope based on its outcome. Envelopes that cannot be
decoded are dead-lettered straight away.
"""

import asyncio
from dataclasses import dataclass, field

from app.config import Settings, settings as default_settings
from app.infrastructure.observability.logging import get_logger
from app.infrastructure.queue.redis_queue import Delivery, RedisQueue
from app.jobs.processor import JobProcessor
from app.models.domain.queue_domain import JobOutcome

logger = get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


@dataclass
class ConsumerMetrics:
    batches: int = 0
    outcomes: dict[str, int] = field(default_factory=dict)
    dead_lettered: int = 0

    def record(self, outcome: JobOutcome) -> None:
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def to_dict(self) -> dict:
        return {
            "batches": self.batches,
            "outcomes": dict(self.outcomes),
            "dead_lettered": self.dead_lettered,
        }


class JobsQueueConsumer:
    def __init__(
        self,
        queue: RedisQueue,
        processor: JobProcessor,
        settings: Settings = default_settings,
    ):
        self.queue = queue
        self.processor = processor
        self.batch_size = settings.JOB_BATCH_SIZE
        self.wait_s = settings.JOB_POLL_WAIT_S
        self.defer_delay_s = settings.JOB_DEFER_DELAY_S
        self.metrics = ConsumerMetrics()
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        """Consume until stop() is called."""
        requeued = await self.queue.requeue_stale_processing()
        logger.info(
            "Jobs consumer started",
            queue=self.queue.name,
            batch_size=self.batch_size,
            requeued=requeued,
        )

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Error in jobs consumer loop", error=str(e), error_type=type(e).__name__
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

        logger.info("Jobs consumer stopped", **self.metrics.to_dict())

    async def run_once(self) -> int:
        """Process one batch. Returns how many envelopes were received."""
        await self.queue.promote_delayed()

        deliveries = await self.queue.receive_batch(self.batch_size, wait_s=self.wait_s)
        if not deliveries:
            return 0

        decodable = [d for d in deliveries if d.message is not None]
        for delivery in deliveries:
            if delivery.message is None:
                await self.queue.retry(delivery)
                self.metrics.dead_lettered += 1

        outcomes = await self.processor.process_batch([d.message for d in decodable])
        for delivery, outcome in zip(decodable, outcomes, strict=True):
            await self._settle(delivery, outcome)

        self.metrics.batches += 1
        return len(deliveries)

    async def _settle(self, delivery: Delivery, outcome: JobOutcome) -> None:
        self.metrics.record(outcome)
        if outcome.should_ack:
            await self.queue.ack(delivery)
            return
        if outcome == JobOutcome.DEFERRED:
            await self.queue.defer(delivery, self.defer_delay_s)
            return

        if not await self.queue.retry(delivery):
            self.metrics.dead_lettered += 1
