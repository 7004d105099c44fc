"""
Persistence for moderated submissions.

Each reviewable row (directory_listings, content_submissions) is mirrored
in unified_submissions, keyed by (reference_id, submission_type), so the
moderation queue can list every kind of submission in one place.
"""

from typing import Any

from psycopg import sql
from psycopg.types.json import Jsonb

from app.db.helpers import execute_query, with_db_retry
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REVIEWABLE_TABLES = frozenset({"directory_listings", "content_submissions"})


class SubmissionRepository:
    @with_db_retry()
    async def set_status(
        self, table: str, submission_id: str, status: str, *, stamp_published: bool = False
    ) -> bool:
        if table not in REVIEWABLE_TABLES:
            raise ValueError(f"Table '{table}' is not a reviewable submission table")

        published = sql.SQL(", published_at = COALESCE(published_at, NOW())")
        query = sql.SQL(
            "UPDATE {} SET status = %s, updated_at = NOW(){} WHERE id = %s"
        ).format(sql.Identifier(table), published if stamp_published else sql.SQL(""))
        affected = await execute_query(query, (status, submission_id))
        if not affected:
            logger.warning("Submission not found", table=table, submission_id=submission_id)
        return affected > 0

    @with_db_retry()
    async def upsert_unified(
        self,
        reference_id: str,
        submission_type: str,
        user_id: str,
        title: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        query = """
            INSERT INTO unified_submissions (
                reference_id, submission_type, user_id, title, status, metadata, updated_at
            )
            VALUES (%s, %s, %s, %s, 'submitted', %s, NOW())
            ON CONFLICT (reference_id, submission_type) DO UPDATE SET
                user_id = EXCLUDED.user_id,
                title = EXCLUDED.title,
                status = EXCLUDED.status,
                metadata = EXCLUDED.metadata,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                reference_id,
                submission_type,
                user_id,
                title,
                Jsonb(metadata) if metadata is not None else None,
            ),
        )

    @with_db_retry()
    async def record_review(
        self,
        reference_id: str,
        submission_type: str,
        status: str,
        reviewer_notes: str | None = None,
    ) -> None:
        query = """
            UPDATE unified_submissions
            SET status = %s,
                reviewer_notes = COALESCE(%s, reviewer_notes),
                reviewed_at = NOW(),
                published_at = CASE
                    WHEN %s = 'published' THEN COALESCE(published_at, NOW())
                    ELSE published_at
                END,
                updated_at = NOW()
            WHERE reference_id = %s AND submission_type = %s
        """
        await execute_query(
            query, (status, reviewer_notes, status, reference_id, submission_type)
        )
