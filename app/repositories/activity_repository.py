"""
Persistence for activity logs, view counters and Stripe subscription mirrors.
"""

import json
from datetime import datetime
from typing import Any

from psycopg import sql

from app.db.helpers import execute_query, fetch_val, with_db_retry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

VIEW_COUNT_TABLES = frozenset({"directory_listings", "content_submissions", "travel_businesses"})


class ActivityRepository:
    async def log_activity(
        self,
        user_id: str,
        activity_type: str,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        query = """
            INSERT INTO activity_logs (
                user_id, activity_type, metadata, ip_address, user_agent
            )
            VALUES (%s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (
                user_id,
                activity_type,
                json.dumps(metadata) if metadata is not None else None,
                ip_address,
                user_agent,
            ),
        )

    @with_db_retry()
    async def delete_older_than(self, cutoff: datetime) -> int:
        """Single set-based delete; row count does not matter."""
        return await execute_query("DELETE FROM activity_logs WHERE created_at < %s", (cutoff,))


class ContentRepository:
    async def increment_view_count(self, table: str, entity_id: str) -> int | None:
        """Bump view_count in place. Returns the new count, None if the row is missing."""
        if table not in VIEW_COUNT_TABLES:
            raise ValueError(f"View counts are not tracked for table '{table}'")

        query = sql.SQL(
            "UPDATE {} SET view_count = COALESCE(view_count, 0) + 1 WHERE id = %s RETURNING view_count"
        ).format(sql.Identifier(table))
        return await fetch_val(query, (entity_id,))


class SubscriptionRepository:
    @with_db_retry()
    async def upsert_subscription(self, subscription_id: str, customer_id: str, status: str) -> None:
        query = """
            INSERT INTO product_subscriptions (
                stripe_subscription_id, stripe_customer_id, status, updated_at
            )
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (stripe_subscription_id) DO UPDATE SET
                stripe_customer_id = EXCLUDED.stripe_customer_id,
                status = EXCLUDED.status,
                updated_at = NOW()
        """
        await execute_query(query, (subscription_id, customer_id, status))
