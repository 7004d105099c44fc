"""
Persistence for profiles and the Ubuntu contribution ledger.

The ledger (ubuntu_contributions) is append-only; profiles.ubuntu_score is
the aggregate. Both are written in one transaction and the aggregate is
bumped in place, so concurrent awards for one user cannot lose updates.
"""

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.db.helpers import (
    DatabaseError,
    execute_query,
    fetch_one,
    fetch_val,
    stream_rows,
    with_db_retry,
)
from app.db.pool import get_db_transaction
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class ProfileRepositoryError(DatabaseError):
    """More specific exception for profile/ledger failures."""


@dataclass(slots=True)
class ScoreChange:
    user_id: str
    old_score: int
    new_score: int


class ProfileRepository:
    @with_db_retry()
    async def get_email(self, user_id: str) -> str | None:
        return await fetch_val("SELECT email FROM profiles WHERE id = %s", (user_id,))

    @with_db_retry()
    async def award_points(
        self,
        user_id: str,
        contribution_type: str,
        points: int,
        details: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ScoreChange:
        """Insert the ledger row and bump the aggregate score atomically."""

        ledger_query = """
            INSERT INTO ubuntu_contributions (
                user_id, contribution_type, points_earned, details, metadata
            )
            VALUES (%s, %s, %s, %s, %s)
        """
        score_query = """
            UPDATE profiles
            SET ubuntu_score = COALESCE(ubuntu_score, 0) + %s,
                updated_at = NOW()
            WHERE id = %s
            RETURNING ubuntu_score
        """

        async with await get_db_transaction() as conn:
            row = await fetch_one(score_query, (points, user_id), connection=conn)
            if not row:
                raise ProfileRepositoryError(
                    f"Profile {user_id} not found", operation="award_points", recoverable=False
                )
            await execute_query(
                ledger_query,
                (
                    user_id,
                    contribution_type,
                    points,
                    details,
                    json.dumps(metadata) if metadata is not None else None,
                ),
                connection=conn,
            )

        new_score = row["ubuntu_score"]
        return ScoreChange(user_id=user_id, old_score=new_score - points, new_score=new_score)

    @with_db_retry()
    async def mark_onboarding_completed(self, user_id: str, completed_at: datetime) -> bool:
        query = """
            UPDATE profiles
            SET onboarding_completed = true,
                onboarding_completed_at = COALESCE(onboarding_completed_at, %s),
                updated_at = NOW()
            WHERE id = %s
        """
        affected = await execute_query(query, (completed_at, user_id))
        if not affected:
            logger.warning("Onboarding completion found no profile", user_id=user_id)
        return affected > 0

    async def iter_scores(self, batch_size: int = 500) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield batches of {id, ubuntu_score} for every profile."""
        async for rows in stream_rows(
            "SELECT id, COALESCE(ubuntu_score, 0) AS ubuntu_score FROM profiles ORDER BY id",
            batch_size=batch_size,
        ):
            yield rows
