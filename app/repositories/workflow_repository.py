"""
Persistence layer for durable workflows.

Tables:
    workflow_instances (id uuid pk, workflow_name, status, payload jsonb,
                        output jsonb, error, waiting_for, wait_deadline,
                        started_at, updated_at, completed_at)
    workflow_steps     (instance_id, step_name, status, result jsonb, attempts,
                        deadline, started_at, completed_at,
                        primary key (instance_id, step_name))
    workflow_events    (instance_id, event_name, payload jsonb, received_at,
                        primary key (instance_id, event_name))
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.workflow_domain import (
    StepRecord,
    StepStatus,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowStatus,
)

logger = get_logger(__name__)

_UNSET = object()

TERMINAL_STATUS_VALUES = tuple(s.value for s in WorkflowStatus if s.is_terminal)


class WorkflowRepositoryError(DatabaseError):
    """More specific exception for workflow store failures."""


class WorkflowRepository:
    INSTANCE_COLUMNS = """
        id, workflow_name, status, payload, output, error, waiting_for,
        wait_deadline, started_at, updated_at, completed_at
    """

    STEP_COLUMNS = """
        instance_id, step_name, status, result, attempts, deadline,
        started_at, completed_at
    """

    @staticmethod
    def _row_to_instance(row: dict | None) -> WorkflowInstance | None:
        if not row:
            return None

        return WorkflowInstance(
            id=str(row["id"]),
            workflow_name=row["workflow_name"],
            status=WorkflowStatus(row["status"]),
            payload=row["payload"] or {},
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            completed_at=row.get("completed_at"),
            error=row.get("error"),
            output=row.get("output"),
            waiting_for=row.get("waiting_for"),
            wait_deadline=row.get("wait_deadline"),
        )

    @staticmethod
    def _row_to_step(row: dict | None) -> StepRecord | None:
        if not row:
            return None

        return StepRecord(
            instance_id=str(row["instance_id"]),
            step_name=row["step_name"],
            status=StepStatus(row["status"]),
            result=row.get("result"),
            attempts=row.get("attempts") or 0,
            deadline=row.get("deadline"),
            started_at=row["started_at"],
            completed_at=row.get("completed_at"),
        )

    async def create_instance(
        self, instance_id: str, workflow_name: str, payload: dict[str, Any], now: datetime
    ) -> WorkflowInstance:
        query = f"""
            INSERT INTO workflow_instances (
                id, workflow_name, status, payload, started_at, updated_at
            )
            VALUES (%s, %s, 'pending', %s, %s, %s)
            RETURNING {self.INSTANCE_COLUMNS}
        """
        row = await fetch_one(query, (instance_id, workflow_name, Jsonb(payload), now, now))
        if not row:
            raise WorkflowRepositoryError(
                "Failed to create workflow instance", operation="create_instance"
            )

        logger.info("Workflow instance created", instance_id=instance_id, workflow=workflow_name)
        return self._row_to_instance(row)

    @with_db_retry()
    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        query = f"SELECT {self.INSTANCE_COLUMNS} FROM workflow_instances WHERE id = %s"
        return self._row_to_instance(await fetch_one(query, (instance_id,)))

    @with_db_retry()
    async def update_instance(
        self,
        instance_id: str,
        *,
        now: datetime,
        status: WorkflowStatus,
        error: Any = _UNSET,
        output: Any = _UNSET,
        completed_at: Any = _UNSET,
        waiting_for: Any = _UNSET,
        wait_deadline: Any = _UNSET,
    ) -> WorkflowInstance | None:
        """Update status plus any explicitly passed column; others keep their value.

        Finished instances are never rewritten: returns None when the row is
        already completed, failed or cancelled, so a cancel that commits
        mid-advance sticks.
        """
        assignments = ["status = %s", "updated_at = %s"]
        params: list[Any] = [status.value, now]

        for column, value in (
            ("error", error),
            ("output", output),
            ("completed_at", completed_at),
            ("waiting_for", waiting_for),
            ("wait_deadline", wait_deadline),
        ):
            if value is _UNSET:
                continue
            assignments.append(f"{column} = %s")
            params.append(Jsonb(value) if column == "output" and value is not None else value)

        query = f"""
            UPDATE workflow_instances
            SET {", ".join(assignments)}
            WHERE id = %s AND status <> ALL(%s)
            RETURNING {self.INSTANCE_COLUMNS}
        """
        params.extend([instance_id, list(TERMINAL_STATUS_VALUES)])
        return self._row_to_instance(await fetch_one(query, tuple(params)))

    @with_db_retry()
    async def list_instances(
        self, statuses: tuple[WorkflowStatus, ...], limit: int = 100
    ) -> list[WorkflowInstance]:
        query = f"""
            SELECT {self.INSTANCE_COLUMNS}
            FROM workflow_instances
            WHERE status = ANY(%s)
            ORDER BY started_at
            LIMIT %s
        """
        rows = await fetch_all(query, ([s.value for s in statuses], limit))
        return [self._row_to_instance(row) for row in rows]

    @with_db_retry()
    async def list_stale(
        self, statuses: tuple[WorkflowStatus, ...], updated_before: datetime, limit: int = 100
    ) -> list[WorkflowInstance]:
        """Instances in `statuses` that nothing has touched since updated_before."""
        query = f"""
            SELECT {self.INSTANCE_COLUMNS}
            FROM workflow_instances
            WHERE status = ANY(%s) AND updated_at < %s
            ORDER BY updated_at
            LIMIT %s
        """
        rows = await fetch_all(query, ([s.value for s in statuses], updated_before, limit))
        return [self._row_to_instance(row) for row in rows]

    @with_db_retry()
    async def list_due_waits(self, now: datetime, limit: int = 100) -> list[WorkflowInstance]:
        query = f"""
            SELECT {self.INSTANCE_COLUMNS}
            FROM workflow_instances
            WHERE status = 'waiting' AND wait_deadline <= %s
            ORDER BY wait_deadline
            LIMIT %s
        """
        rows = await fetch_all(query, (now, limit))
        return [self._row_to_instance(row) for row in rows]

    @with_db_retry()
    async def get_step(self, instance_id: str, step_name: str) -> StepRecord | None:
        query = f"""
            SELECT {self.STEP_COLUMNS}
            FROM workflow_steps
            WHERE instance_id = %s AND step_name = %s
        """
        return self._row_to_step(await fetch_one(query, (instance_id, step_name)))

    @with_db_retry()
    async def save_step(self, step: StepRecord) -> None:
        query = """
            INSERT INTO workflow_steps (
                instance_id, step_name, status, result, attempts, deadline,
                started_at, completed_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (instance_id, step_name) DO UPDATE SET
                status = EXCLUDED.status,
                result = EXCLUDED.result,
                attempts = EXCLUDED.attempts,
                deadline = EXCLUDED.deadline,
                completed_at = EXCLUDED.completed_at
        """
        await execute_query(
            query,
            (
                step.instance_id,
                step.step_name,
                step.status.value,
                Jsonb(step.result),
                step.attempts,
                step.deadline,
                step.started_at,
                step.completed_at,
            ),
        )

    @with_db_retry()
    async def record_event(self, event: WorkflowEvent) -> bool:
        """Store an event. False when one with the same name was already stored."""
        query = """
            INSERT INTO workflow_events (instance_id, event_name, payload, received_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (instance_id, event_name) DO NOTHING
        """
        affected = await execute_query(
            query,
            (event.instance_id, event.event_name, Jsonb(event.payload), event.received_at),
        )
        return affected > 0

    @with_db_retry()
    async def get_event(self, instance_id: str, event_name: str) -> WorkflowEvent | None:
        query = """
            SELECT instance_id, event_name, payload, received_at
            FROM workflow_events
            WHERE instance_id = %s AND event_name = %s
        """
        row = await fetch_one(query, (instance_id, event_name))
        if not row:
            return None
        return WorkflowEvent(
            instance_id=str(row["instance_id"]),
            event_name=row["event_name"],
            payload=row["payload"] or {},
            received_at=row["received_at"],
        )
