"""
Dedupe markers for queue messages, kept in the shared Redis.

A marker moves through two states:
    in_flight  written atomically (SET NX) before the handler runs, short TTL
    done       written after the handler succeeded, kept for the dedupe window

A failed handler deletes its marker so the redelivered message runs again.
A crashed worker's in_flight marker simply expires after the grace period.
"""

from enum import Enum

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

IN_FLIGHT = "in_flight"
DONE = "done"


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    DONE = "done"
    IN_FLIGHT = "in_flight"


class DedupeStore:
    def __init__(self, redis_client, *, ttl_s: int = 3600, in_flight_grace_s: int = 300):
        self._redis = redis_client
        self.ttl_s = ttl_s
        self.in_flight_grace_s = in_flight_grace_s

    async def try_claim(self, key: str) -> ClaimResult:
        if await self._redis.set_if_absent(key, IN_FLIGHT, self.in_flight_grace_s):
            return ClaimResult.CLAIMED

        existing = await self._redis.get(key)
        if existing == DONE:
            return ClaimResult.DONE
        if existing is None:
            # Expired between SET NX and GET; one more attempt decides it
            if await self._redis.set_if_absent(key, IN_FLIGHT, self.in_flight_grace_s):
                return ClaimResult.CLAIMED
        return ClaimResult.IN_FLIGHT

    async def mark_done(self, key: str) -> None:
        if not await self._redis.set_with_ttl(key, DONE, self.ttl_s):
            # The job already ran; a lost marker only weakens dedupe
            logger.warning("Failed to persist dedupe marker", dedupe_key=key[:80])

    async def release(self, key: str) -> None:
        await self._redis.delete(key)
