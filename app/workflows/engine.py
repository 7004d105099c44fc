"""
Durable workflow engine.

A workflow definition is ordinary async code that calls ctx.step() for
side effects and ctx.wait_for_event() for suspension points. Every step
result and every resolved wait is persisted before the code moves on, so
running the same instance again replays finished work as no-ops and picks
up exactly where it stopped.

A wait that cannot resolve yet raises WorkflowSuspended, which unwinds
run() and parks the instance in `waiting`. It is resumed by send_event()
when its event arrives or by resume_due() once its deadline has passed.
The deadline is fixed when the wait is first entered, so a restart only
gets the remaining time budget.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from app.config import settings as default_settings
from app.infrastructure.observability.logging import get_logger, log_workflow_transition
from app.models.domain.workflow_domain import (
    ACTIVE_STATUSES,
    StepRecord,
    StepStatus,
    WaitResult,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowStatus,
)

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WorkflowError(Exception):
    """Base class for workflow engine errors."""


class UnknownWorkflowError(WorkflowError):
    pass


class WorkflowNotFoundError(WorkflowError):
    pass


class WorkflowStateError(WorkflowError):
    """The requested transition is not allowed from the current status."""


class WorkflowStepError(WorkflowError):
    def __init__(self, step_name: str, attempts: int, cause: Exception):
        super().__init__(f"Step '{step_name}' failed after {attempts} attempts: {cause}")
        self.step_name = step_name
        self.attempts = attempts
        self.cause = cause


class WorkflowSuspended(Exception):
    """Control flow: the instance must wait for an event or its deadline."""

    def __init__(self, event_name: str, deadline: datetime):
        super().__init__(event_name)
        self.event_name = event_name
        self.deadline = deadline


class WorkflowCancelled(Exception):
    """Control flow: the instance was cancelled while it was running."""


class WorkflowDefinition:
    """Base class for workflow definitions."""

    name: str = ""
    payload_model: type[BaseModel] = BaseModel

    async def run(self, ctx: "WorkflowContext", payload: BaseModel) -> dict[str, Any]:
        raise NotImplementedError


class RedisInstanceLock:
    """Per-instance mutex on redis-py's token-checked Lock, expiring after ttl_s."""

    def __init__(self, redis_client, ttl_s: int = 120):
        self._redis = redis_client
        self.ttl_s = ttl_s

    @staticmethod
    def _key(instance_id: str) -> str:
        return f"workflow:lock:{instance_id}"

    async def acquire(self, instance_id: str) -> Lock | None:
        lock = await self._redis.lock(self._key(instance_id), self.ttl_s)
        if await lock.acquire(blocking=False):
            return lock
        return None

    async def release(self, lock: Lock) -> None:
        try:
            await lock.release()
        except LockError as e:
            # TTL ran out mid-advance; another process may already hold it
            logger.warning("Workflow lock lost before release", lock=lock.name, error=str(e))


class WorkflowContext:
    """Step and wait primitives bound to one running instance."""

    def __init__(self, engine: "WorkflowEngine", instance: WorkflowInstance):
        self._engine = engine
        self._store = engine.store
        self.instance = instance

    @property
    def instance_id(self) -> str:
        return self.instance.id

    def now(self) -> datetime:
        return self._engine.clock()

    async def _ensure_not_cancelled(self) -> None:
        current = await self._store.get_instance(self.instance_id)
        if current is None or current.status == WorkflowStatus.CANCELLED:
            raise WorkflowCancelled(self.instance_id)

    async def step(self, name: str, action: Callable[[], Awaitable[Any]]) -> Any:
        """Run action once per instance; replays return the stored result."""
        record = await self._store.get_step(self.instance_id, name)
        if record and record.status == StepStatus.COMPLETED:
            logger.debug("Replaying completed step", instance_id=self.instance_id, step=name)
            return record.result

        await self._ensure_not_cancelled()

        started_at = self.now()
        max_attempts = self._engine.step_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                result = await action()
                break
            except Exception as e:
                if attempt >= max_attempts:
                    logger.error(
                        "Workflow step exhausted retries",
                        instance_id=self.instance_id,
                        step=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise WorkflowStepError(name, attempt, e) from e

                delay = self._engine.step_retry_base_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    "Workflow step failed, retrying",
                    instance_id=self.instance_id,
                    step=name,
                    attempt=attempt,
                    delay=delay,
                    error=str(e),
                )
                await self._engine.sleep(delay)

        await self._store.save_step(
            StepRecord(
                instance_id=self.instance_id,
                step_name=name,
                status=StepStatus.COMPLETED,
                result=result,
                attempts=attempt,
                started_at=started_at,
                completed_at=self.now(),
            )
        )
        logger.info("Workflow step completed", instance_id=self.instance_id, step=name)
        return result

    async def wait_for_event(self, event_name: str, timeout: timedelta) -> WaitResult:
        """Resolve to the event (scoped to this instance) or to a timeout."""
        step_name = f"wait:{event_name}"
        record = await self._store.get_step(self.instance_id, step_name)
        if record and record.status == StepStatus.COMPLETED:
            return WaitResult(**record.result)

        now = self.now()
        if record is None:
            await self._ensure_not_cancelled()
            record = StepRecord(
                instance_id=self.instance_id,
                step_name=step_name,
                status=StepStatus.WAITING,
                started_at=now,
                deadline=now + timeout,
            )
            await self._store.save_step(record)
            logger.info(
                "Workflow waiting for event",
                instance_id=self.instance_id,
                event_name=event_name,
                deadline=record.deadline.isoformat(),
            )

        event = await self._store.get_event(self.instance_id, event_name)
        if event is not None and event.received_at <= record.deadline:
            result = WaitResult(outcome="event", payload=event.payload)
        elif now >= record.deadline:
            result = WaitResult(outcome="timeout")
        else:
            raise WorkflowSuspended(event_name, record.deadline)

        record.status = StepStatus.COMPLETED
        record.result = {"outcome": result.outcome, "payload": result.payload}
        record.completed_at = now
        await self._store.save_step(record)
        logger.info(
            "Workflow wait resolved",
            instance_id=self.instance_id,
            event_name=event_name,
            outcome=result.outcome,
        )
        return result


class WorkflowEngine:
    """Starts, advances, signals and cancels workflow instances."""

    def __init__(
        self,
        store,
        definitions: list[WorkflowDefinition],
        *,
        lock: RedisInstanceLock | None = None,
        settings=default_settings,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store = store
        self._definitions = {definition.name: definition for definition in definitions}
        self._lock = lock
        self.clock = clock
        self.sleep = sleep
        self._id_factory = id_factory
        self.step_max_attempts = max(1, settings.WORKFLOW_STEP_MAX_ATTEMPTS)
        self.step_retry_base_delay_s = settings.WORKFLOW_STEP_RETRY_BASE_DELAY_S

    @property
    def workflow_names(self) -> list[str]:
        return sorted(self._definitions)

    def definition(self, workflow_name: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_name]
        except KeyError:
            raise UnknownWorkflowError(f"Unknown workflow: {workflow_name}") from None

    async def _require(self, instance_id: str) -> WorkflowInstance:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise WorkflowNotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def _transition(
        self, instance: WorkflowInstance, status: WorkflowStatus, **fields
    ) -> WorkflowInstance | None:
        """Write a new status. None when the instance turned terminal in the meantime."""
        updated = await self.store.update_instance(
            instance.id, now=self.clock(), status=status, **fields
        )
        if updated is None:
            logger.info(
                "Workflow transition skipped, instance already finished",
                instance_id=instance.id,
                to_status=status.value,
            )
            return None

        log_workflow_transition(
            instance.id, instance.workflow_name, instance.status.value, status.value
        )
        return updated

    # =================================================================
    # Lifecycle
    # =================================================================

    async def start(self, workflow_name: str, payload: dict[str, Any]) -> WorkflowInstance:
        """Create a pending instance and run it up to its first wait.

        Raises pydantic.ValidationError when the payload does not fit the
        workflow's payload model.
        """
        definition = self.definition(workflow_name)
        validated = definition.payload_model.model_validate(payload)

        instance = await self.store.create_instance(
            self._id_factory(),
            workflow_name,
            validated.model_dump(mode="json", by_alias=True),
            self.clock(),
        )
        return await self.advance(instance.id)

    async def advance(self, instance_id: str) -> WorkflowInstance:
        """Run the instance from its persisted state until it waits or finishes."""
        lock = None
        if self._lock is not None:
            lock = await self._acquire_lock(instance_id)
            if lock is None:
                logger.warning("Workflow instance busy, skipping advance", instance_id=instance_id)
                return await self._require(instance_id)

        try:
            return await self._advance_locked(instance_id)
        finally:
            if lock is not None:
                await self._lock.release(lock)

    async def _acquire_lock(self, instance_id: str, attempts: int = 5) -> Lock | None:
        for attempt in range(attempts):
            lock = await self._lock.acquire(instance_id)
            if lock is not None:
                return lock
            await self.sleep(0.2 * (attempt + 1))
        return None

    async def _advance_locked(self, instance_id: str) -> WorkflowInstance:
        instance = await self._require(instance_id)
        if instance.status.is_terminal:
            return instance

        definition = self.definition(instance.workflow_name)
        while True:
            if instance.status != WorkflowStatus.RUNNING:
                instance = await self._transition(
                    instance, WorkflowStatus.RUNNING, waiting_for=None, wait_deadline=None
                )
                if instance is None:
                    return await self._require(instance_id)

            ctx = WorkflowContext(self, instance)
            try:
                payload = definition.payload_model.model_validate(instance.payload)
                output = await definition.run(ctx, payload)

            except WorkflowSuspended as suspended:
                waiting = await self._transition(
                    instance,
                    WorkflowStatus.WAITING,
                    waiting_for=suspended.event_name,
                    wait_deadline=suspended.deadline,
                )
                if waiting is None:
                    return await self._require(instance_id)

                # send_event only wakes instances it sees waiting; one that
                # landed while this run was still going is picked up here
                if await self.store.get_event(instance_id, suspended.event_name) is None:
                    return waiting
                logger.info(
                    "Event arrived while suspending, resuming",
                    instance_id=instance_id,
                    event_name=suspended.event_name,
                )
                instance = waiting
                continue

            except WorkflowCancelled:
                logger.info("Workflow instance stopped after cancellation", instance_id=instance_id)
                return await self._require(instance_id)

            except Exception as e:
                logger.exception(
                    "Workflow instance failed",
                    instance_id=instance_id,
                    workflow=instance.workflow_name,
                )
                return await self._finish(
                    instance, WorkflowStatus.FAILED, error=str(e)[:500], output=None
                )

            return await self._finish(
                instance, WorkflowStatus.COMPLETED, error=None, output=output
            )

    async def _finish(
        self, instance: WorkflowInstance, status: WorkflowStatus, **fields
    ) -> WorkflowInstance:
        finished = await self._transition(
            instance,
            status,
            completed_at=self.clock(),
            waiting_for=None,
            wait_deadline=None,
            **fields,
        )
        return finished or await self._require(instance.id)

    async def send_event(
        self, instance_id: str, event_name: str, payload: dict[str, Any] | None = None
    ) -> bool:
        """Deliver an event to one instance. False when the instance already finished."""
        instance = await self._require(instance_id)
        if instance.status.is_terminal:
            logger.info(
                "Ignoring event for finished workflow",
                instance_id=instance_id,
                event_name=event_name,
                status=instance.status.value,
            )
            return False

        recorded = await self.store.record_event(
            WorkflowEvent(
                instance_id=instance_id,
                event_name=event_name,
                payload=payload or {},
                received_at=self.clock(),
            )
        )
        if not recorded:
            logger.info("Duplicate workflow event", instance_id=instance_id, event_name=event_name)

        # Re-read: the instance may have suspended on this event after the first read
        instance = await self._require(instance_id)
        if instance.status == WorkflowStatus.WAITING and instance.waiting_for == event_name:
            await self.advance(instance_id)
        return True

    async def cancel(self, instance_id: str) -> WorkflowInstance:
        instance = await self._require(instance_id)
        if not instance.status.is_terminal:
            cancelled = await self._transition(
                instance,
                WorkflowStatus.CANCELLED,
                completed_at=self.clock(),
                waiting_for=None,
                wait_deadline=None,
            )
            if cancelled is not None:
                return cancelled
            instance = await self._require(instance_id)

        raise WorkflowStateError(
            f"Workflow instance {instance_id} is already {instance.status.value}"
        )

    # =================================================================
    # Queries and sweeps
    # =================================================================

    async def get_status(self, instance_id: str) -> WorkflowInstance:
        return await self._require(instance_id)

    async def list_active(self, limit: int = 100) -> list[WorkflowInstance]:
        return await self.store.list_instances(ACTIVE_STATUSES, limit)

    async def resume_due(self, now: datetime | None = None) -> int:
        """Advance waiting instances whose deadline has passed."""
        due = await self.store.list_due_waits(now or self.clock())
        for instance in due:
            await self._advance_safely(instance.id)
        return len(due)

    async def recover(self, stale_after: timedelta | None = None) -> int:
        """Advance instances a crashed process left in pending or running.

        With stale_after, only instances untouched for that long are picked up,
        so a sweep does not race an advance that is still in progress.
        """
        statuses = (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)
        if stale_after is None:
            stranded = await self.store.list_instances(statuses, limit=1000)
        else:
            stranded = await self.store.list_stale(
                statuses, self.clock() - stale_after, limit=1000
            )
        for instance in stranded:
            await self._advance_safely(instance.id)
        return len(stranded)

    async def _advance_safely(self, instance_id: str) -> None:
        # One broken instance must not stop the sweep
        try:
            await self.advance(instance_id)
        except Exception as e:
            logger.error("Failed to advance workflow instance", instance_id=instance_id, error=str(e))
