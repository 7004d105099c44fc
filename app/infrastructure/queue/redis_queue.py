"""
Redis list queue with at-least-once delivery.

Layout for a queue named "jobs":
    queue:jobs             pending envelopes (LPUSH in, LMOVE out from the tail)
    queue:jobs:processing  envelopes handed to a consumer and not yet acked
    queue:jobs:delayed     sorted set of retries, scored by due time
    queue:jobs:dead        envelopes that ran out of retries

A consumer that dies between receive and ack leaves its envelopes in the
processing list; requeue_stale_processing() puts them back on startup.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import ValidationError

from app.infrastructure.observability.logging import get_logger
from app.models.domain.queue_domain import QueueMessage

logger = get_logger(__name__)


@dataclass(slots=True)
class Delivery:
    """One envelope taken off the queue."""

    raw: str
    message: QueueMessage | None

    @property
    def attempts(self) -> int:
        return (self.message.retry_count if self.message else 0) + 1


class RedisQueue:
    def __init__(
        self,
        redis_client,
        name: str,
        *,
        max_retries: int = 3,
        retry_base_delay_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis_client
        self.name = name
        self.max_retries = max_retries
        self.retry_base_delay_s = retry_base_delay_s
        self._clock = clock

    @property
    def pending_key(self) -> str:
        return f"queue:{self.name}"

    @property
    def processing_key(self) -> str:
        return f"queue:{self.name}:processing"

    @property
    def delayed_key(self) -> str:
        return f"queue:{self.name}:delayed"

    @property
    def dead_key(self) -> str:
        return f"queue:{self.name}:dead"

    async def send(self, message: QueueMessage) -> None:
        await self._redis.lpush(self.pending_key, message.to_json())
        logger.debug("Message enqueued", queue=self.name, message_type=message.type)

    async def receive_batch(self, max_messages: int, wait_s: float | None = None) -> list[Delivery]:
        """Move up to max_messages into the processing list and return them.

        Blocks for wait_s on the first message only; the rest of the batch is
        whatever is already pending.
        """
        deliveries: list[Delivery] = []

        first = await self._redis.move_tail_to_head(
            self.pending_key, self.processing_key, timeout_s=wait_s
        )
        if first is None:
            return deliveries
        deliveries.append(self._decode(first))

        while len(deliveries) < max_messages:
            raw = await self._redis.move_tail_to_head(self.pending_key, self.processing_key)
            if raw is None:
                break
            deliveries.append(self._decode(raw))

        return deliveries

    def _decode(self, raw: str) -> Delivery:
        try:
            return Delivery(raw=raw, message=QueueMessage.from_json(raw))
        except ValidationError as e:
            logger.warning("Undecodable queue message", queue=self.name, error=str(e), raw=raw[:200])
            return Delivery(raw=raw, message=None)

    async def ack(self, delivery: Delivery) -> None:
        await self._redis.lrem(self.processing_key, delivery.raw)

    async def retry(self, delivery: Delivery) -> bool:
        """Schedule a redelivery with backoff. Returns False when dead-lettered."""
        await self._redis.lrem(self.processing_key, delivery.raw)

        if delivery.message is None:
            await self._redis.lpush(self.dead_key, delivery.raw)
            return False

        next_count = delivery.message.retry_count + 1
        if next_count > self.max_retries:
            await self._redis.lpush(self.dead_key, delivery.raw)
            logger.error(
                "Message exhausted retries, moved to dead letter queue",
                queue=self.name,
                message_type=delivery.message.type,
                attempts=delivery.attempts,
            )
            return False

        retried = delivery.message.model_copy(update={"retry_count": next_count})
        delay = self.retry_base_delay_s * (2 ** (next_count - 1))
        await self._redis.zadd(self.delayed_key, retried.to_json(), self._clock() + delay)
        logger.info(
            "Message scheduled for retry",
            queue=self.name,
            message_type=retried.type,
            retry_count=next_count,
            delay_s=delay,
        )
        return True

    async def defer(self, delivery: Delivery, delay_s: float) -> None:
        """Redeliver the envelope unchanged after delay_s; retryCount is not bumped."""
        await self._redis.lrem(self.processing_key, delivery.raw)
        await self._redis.zadd(self.delayed_key, delivery.raw, self._clock() + delay_s)
        logger.info(
            "Message deferred",
            queue=self.name,
            message_type=delivery.message.type if delivery.message else None,
            delay_s=delay_s,
        )

    async def promote_delayed(self, limit: int = 100) -> int:
        """Move retries whose delay has elapsed back onto the pending list."""
        due = await self._redis.zpop_due(self.delayed_key, self._clock(), limit)
        for raw in due:
            await self._redis.lpush(self.pending_key, raw)
        return len(due)

    async def requeue_stale_processing(self) -> int:
        """Return envelopes orphaned by a crashed consumer to the pending list.

        Only safe while no other consumer of this queue is mid-batch, so the
        worker calls it once before its first receive.
        """
        moved = 0
        while await self._redis.move_tail_to_head(self.processing_key, self.pending_key):
            moved += 1
        if moved:
            logger.warning("Requeued orphaned messages", queue=self.name, count=moved)
        return moved

    async def depth(self) -> dict[str, int]:
        return {
            "pending": await self._redis.llen(self.pending_key),
            "processing": await self._redis.llen(self.processing_key),
            "dead": await self._redis.llen(self.dead_key),
        }
