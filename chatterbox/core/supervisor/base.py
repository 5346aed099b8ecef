# chatterbox/core/supervisor/base.py
"""
Generic attempt supervisor.

Each workflow subclasses AttemptSupervisor and points it at its four fact
tables. Leaf workflows go through RetryingSupervisor, which opens one
attempt per side-effect task; composites drive their own attempt. One
invocation:

1. validates the queued state (failures are returned, never raised)
2. trips on runaway self-scheduling (run_count >= max_runs raises)
3. locks the workflow-task row
4. loads facts and branches on decide()

Facts are only ever inserted. Recording a fact locks the owning
workflow-task row, the same unit of mutual exclusion the supervisor uses.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, ClassVar, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.errors import SupervisorRunLimitExceeded
from chatterbox.core.logging import get_logger
from chatterbox.core.models.app import SupervisorPolicy
from chatterbox.core.queue import ops as queue_ops
from chatterbox.core.supervisor.backoff import next_check_at, utc_now
from chatterbox.core.supervisor.facts import (
    SupervisorDecision,
    SupervisorFacts,
    decide,
    is_in_progress,
    is_stuck,
)
from chatterbox.core.supervisor.state import SupervisorState, parse_state
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.result import is_err
from chatterbox.core.types.status import FactOutcome, SupervisorStatus, TaskType


@dataclass(frozen=True)
class FactTables:
    """The four tables of one supervised workflow plus its domain key column."""

    task: type[Any]
    attempt: type[Any]
    succeeded: type[Any]
    failed: type[Any]
    key: str

    @property
    def key_column(self) -> Any:
        return getattr(self.task, self.key)


class KickoffGate(Enum):
    # No-op while the latest task for the key is still in progress.
    IN_PROGRESS = 'in_progress'
    # Every kickoff creates a task (one message, one send).
    ALWAYS_NEW = 'always_new'


def read_int(payload: dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def attempt_id_from(payload: dict[str, Any]) -> Optional[int]:
    """attempt_id from a handler document, direct or under `original_payload`."""
    direct = read_int(payload, 'attempt_id')
    if direct is not None:
        return direct
    original = payload.get('original_payload')
    if isinstance(original, dict):
        return read_int(original, 'attempt_id')
    return None


def provider_task_payload(
    task_type: TaskType,
    attempt_id: int,
    *,
    before: HandlerId,
    success: HandlerId,
    error: HandlerId,
) -> dict[str, Any]:
    """Payload of a side-effect task the worker hands to an external provider."""
    return {
        'task_type': task_type.value,
        'attempt_id': attempt_id,
        'before_handler': before.value,
        'success_handler': success.value,
        'error_handler': error.value,
    }


def db_function_payload(
    handler: HandlerId,
    *,
    success: Optional[HandlerId] = None,
    error: Optional[HandlerId] = None,
    **values: Any,
) -> dict[str, Any]:
    """Payload of a db_function task, optionally followed by result handlers."""
    payload: dict[str, Any] = {'task_type': TaskType.DB_FUNCTION.value, 'handler': handler.value}
    if success is not None:
        payload['success_handler'] = success.value
    if error is not None:
        payload['error_handler'] = error.value
    payload.update(values)
    return payload


class AttemptSupervisor(ABC):
    name: ClassVar[str]
    handler: ClassVar[HandlerId]
    tables: ClassVar[FactTables]
    kickoff_gate: ClassVar[KickoffGate] = KickoffGate.IN_PROGRESS
    state_model: ClassVar[type[SupervisorState]] = SupervisorState

    def __init__(
        self,
        policy: SupervisorPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.policy = policy
        self.clock = clock
        self.logger = get_logger(self.name)

    # ------------------------------------------------------------------
    # Entry point (registered under `handler`)
    # ------------------------------------------------------------------

    async def run(self, session: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
        parsed = parse_state(self.state_model, payload)
        if is_err(parsed):
            self.logger.warning(f'Rejected supervisor payload: {parsed.err_value}')
            return {'status': parsed.err_value}
        state = parsed.ok_value

        self.check_run_limit(state)

        task = await self.lock_task(session, state.task_id)
        if task is None:
            return {'status': 'task_not_found'}

        status = await self.supervise(session, task, state)
        self.logger.debug(
            f'{self.name} task {state.task_id} run {state.run_count}: {status.value}'
        )
        return {'status': status.value}

    def check_run_limit(self, state: SupervisorState) -> None:
        if state.run_count >= self.policy.max_runs:
            self.logger.critical(
                f'{self.name} task {state.task_id} reached run {state.run_count} '
                f'(max_runs={self.policy.max_runs}); refusing to reschedule'
            )
            raise SupervisorRunLimitExceeded(
                self.name, state.task_id, state.run_count, self.policy.max_runs
            )

    @abstractmethod
    async def supervise(
        self, session: AsyncSession, task: Any, state: SupervisorState
    ) -> SupervisorStatus:
        """One step of the workflow; the caller holds the task lock."""

    def give_up(self, task: Any, facts: SupervisorFacts) -> SupervisorStatus:
        if self.policy.exhaustion_is_success:
            self.logger.warning(
                f'{self.name} task {task.id} gave up after {facts.num_failures} failures; '
                'reporting success so dependents are not blocked'
            )
            return SupervisorStatus.SUCCEEDED
        self.logger.error(
            f'{self.name} task {task.id} gave up after {facts.num_failures} failures'
        )
        return SupervisorStatus.MAX_ATTEMPTS_REACHED

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    async def lock_task(self, session: AsyncSession, task_id: int) -> Optional[Any]:
        T = self.tables.task
        result = await session.execute(
            select(T).where(T.id == task_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def count_facts(self, session: AsyncSession, task_id: int) -> SupervisorFacts:
        A, S, F = self.tables.attempt, self.tables.succeeded, self.tables.failed

        has_succeeded = (
            select(S.attempt_id)
            .join(A, A.id == S.attempt_id)
            .where(A.task_id == task_id)
            .exists()
        )
        num_failures = (
            select(func.count())
            .select_from(F)
            .join(A, A.id == F.attempt_id)
            .where(A.task_id == task_id)
            .scalar_subquery()
        )
        num_attempts = (
            select(func.count()).select_from(A).where(A.task_id == task_id).scalar_subquery()
        )

        row = (await session.execute(select(has_succeeded, num_failures, num_attempts))).one()
        return SupervisorFacts(
            has_succeeded=bool(row[0]),
            num_failures=int(row[1]),
            num_attempts=int(row[2]),
        )

    async def load_facts(self, session: AsyncSession, task: Any) -> SupervisorFacts:
        facts = await self.count_facts(session, task.id)
        if facts.has_succeeded:
            return facts
        return SupervisorFacts(
            has_succeeded=False,
            num_failures=facts.num_failures,
            num_attempts=facts.num_attempts,
            is_done=await self.is_done(session, task),
        )

    async def is_done(self, session: AsyncSession, task: Any) -> bool:
        """Domain check for work completed outside this workflow's attempts."""
        return False

    async def latest_task_id(self, session: AsyncSession, key: int) -> Optional[int]:
        T = self.tables.task
        result = await session.execute(
            select(T.id).where(self.tables.key_column == key).order_by(T.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_task_facts(
        self, session: AsyncSession, key: int
    ) -> Optional[SupervisorFacts]:
        task_id = await self.latest_task_id(session, key)
        if task_id is None:
            return None
        return await self.count_facts(session, task_id)

    async def is_in_progress(self, session: AsyncSession, key: int) -> bool:
        facts = await self.latest_task_facts(session, key)
        return facts is not None and is_in_progress(facts, self.policy.max_attempts)

    async def is_stuck(self, session: AsyncSession, key: int) -> bool:
        facts = await self.latest_task_facts(session, key)
        return facts is not None and is_stuck(facts, self.policy.max_attempts)

    async def latest_open_attempt_id(
        self, session: AsyncSession, task_id: int
    ) -> Optional[int]:
        """Newest attempt of the task that has no failure fact."""
        A, F = self.tables.attempt, self.tables.failed
        failed = select(F.attempt_id).where(F.attempt_id == A.id).exists()
        result = await session.execute(
            select(A.id).where(A.task_id == task_id, ~failed).order_by(A.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def insert_attempt(self, session: AsyncSession, task_id: int) -> int:
        A = self.tables.attempt
        result = await session.execute(insert(A).values(task_id=task_id).returning(A.id))
        return int(result.scalar_one())

    async def schedule_next_run(
        self,
        session: AsyncSession,
        state: SupervisorState,
        scheduled_at: Optional[datetime] = None,
    ) -> int:
        return await queue_ops.enqueue(
            session, TaskType.DB_FUNCTION, state.to_payload(), scheduled_at
        )

    async def schedule_recheck(
        self,
        session: AsyncSession,
        state: SupervisorState,
        num_failures: int,
        **changes: Any,
    ) -> int:
        at = next_check_at(self.clock(), self.policy.base_delay_seconds, num_failures)
        return await self.schedule_next_run(session, state.next_run(**changes), at)

    async def record_task_success(self, session: AsyncSession, task_id: int) -> None:
        """Record success for work found done; the caller holds the task lock."""
        attempt_id = await self.latest_open_attempt_id(session, task_id)
        if attempt_id is None:
            attempt_id = await self.insert_attempt(session, task_id)
        S = self.tables.succeeded
        await session.execute(
            pg_insert(S).values(attempt_id=attempt_id).on_conflict_do_nothing(
                index_elements=['attempt_id']
            )
        )

    async def _lock_task_of_attempt(
        self, session: AsyncSession, attempt_id: int
    ) -> Optional[int]:
        T, A = self.tables.task, self.tables.attempt
        result = await session.execute(
            select(T.id)
            .join(A, A.task_id == T.id)
            .where(A.id == attempt_id)
            .with_for_update(of=T)
        )
        return result.scalar_one_or_none()

    async def record_attempt_success(
        self, session: AsyncSession, attempt_id: int
    ) -> FactOutcome:
        task_id = await self._lock_task_of_attempt(session, attempt_id)
        if task_id is None:
            return FactOutcome.ATTEMPT_NOT_FOUND

        A, S, F = self.tables.attempt, self.tables.succeeded, self.tables.failed
        if await self._exists(session, select(F.attempt_id).where(F.attempt_id == attempt_id)):
            return FactOutcome.CONFLICTING

        # At most one succeeded attempt per task.
        other_success = (
            select(S.attempt_id)
            .join(A, A.id == S.attempt_id)
            .where(A.task_id == task_id, S.attempt_id != attempt_id)
        )
        if await self._exists(session, other_success):
            return FactOutcome.DUPLICATE

        result = await session.execute(
            pg_insert(S)
            .values(attempt_id=attempt_id)
            .on_conflict_do_nothing(index_elements=['attempt_id'])
            .returning(S.attempt_id)
        )
        if result.scalar_one_or_none() is None:
            return FactOutcome.DUPLICATE
        return FactOutcome.RECORDED

    async def record_attempt_failure(
        self, session: AsyncSession, attempt_id: int, error_message: str
    ) -> FactOutcome:
        task_id = await self._lock_task_of_attempt(session, attempt_id)
        if task_id is None:
            return FactOutcome.ATTEMPT_NOT_FOUND

        S, F = self.tables.succeeded, self.tables.failed
        if await self._exists(session, select(S.attempt_id).where(S.attempt_id == attempt_id)):
            return FactOutcome.CONFLICTING

        result = await session.execute(
            pg_insert(F)
            .values(attempt_id=attempt_id, error_message=error_message)
            .on_conflict_do_nothing(index_elements=['attempt_id'])
            .returning(F.attempt_id)
        )
        if result.scalar_one_or_none() is None:
            return FactOutcome.DUPLICATE
        self.logger.info(f'{self.name} attempt {attempt_id} failed: {error_message}')
        return FactOutcome.RECORDED

    @staticmethod
    async def _exists(session: AsyncSession, stmt: Any) -> bool:
        return bool((await session.execute(select(stmt.exists()))).scalar())

    # ------------------------------------------------------------------
    # Result handlers (registered as success/error handlers)
    # ------------------------------------------------------------------

    async def handle_success(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        outcome = await self.record_attempt_success(session, attempt_id)
        return {'status': outcome.value}

    async def handle_failure(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        error = payload.get('error')
        message = str(error) if error else 'unknown error'
        outcome = await self.record_attempt_failure(session, attempt_id, message)
        return {'status': outcome.value}

    # ------------------------------------------------------------------
    # Kickoff
    # ------------------------------------------------------------------

    @abstractmethod
    async def validate_kickoff(
        self, session: AsyncSession, key: Optional[int]
    ) -> Optional[str]:
        """Return a validation failure, or None after locking the key's entity row."""

    async def kickoff(
        self,
        session: AsyncSession,
        key: Optional[int],
        scheduled_at: Optional[datetime] = None,
        **task_values: Any,
    ) -> Optional[str]:
        """Create a workflow task and schedule its first supervisor run.

        Returns a validation failure string, or None. With the IN_PROGRESS
        gate this is a no-op while a task for `key` is in progress.
        """
        failure = await self.validate_kickoff(session, key)
        if failure is not None:
            return failure
        assert key is not None

        if self.kickoff_gate is KickoffGate.IN_PROGRESS and await self.is_in_progress(
            session, key
        ):
            self.logger.debug(f'{self.name} already in progress for {self.tables.key}={key}')
            return None

        await self.create_task(session, key, scheduled_at, **task_values)
        return None

    async def create_task(
        self,
        session: AsyncSession,
        key: int,
        scheduled_at: Optional[datetime] = None,
        **task_values: Any,
    ) -> int:
        """Insert a workflow task and enqueue its first supervisor run."""
        T = self.tables.task
        result = await session.execute(
            insert(T).values(**{self.tables.key: key}, **task_values).returning(T.id)
        )
        task_id = int(result.scalar_one())
        await self.schedule_next_run(
            session, self.state_model(handler=self.handler, task_id=task_id), scheduled_at
        )
        self.logger.info(f'{self.name} kicked off task {task_id} for {self.tables.key}={key}')
        return task_id


class RetryingSupervisor(AttemptSupervisor):
    """
    Leaf workflow: each attempt enqueues one side-effect task whose result
    handlers record the attempt's fact. Failed attempts are retried with
    backoff until max_attempts.
    """

    @abstractmethod
    def build_attempt_task(
        self, task: Any, attempt_id: int
    ) -> tuple[TaskType, dict[str, Any]]:
        """The side-effect task to enqueue for a new attempt."""

    async def start_attempt(self, session: AsyncSession, task: Any) -> int:
        attempt_id = await self.insert_attempt(session, task.id)
        task_type, payload = self.build_attempt_task(task, attempt_id)
        await queue_ops.enqueue(session, task_type, payload)
        return attempt_id

    async def supervise(
        self, session: AsyncSession, task: Any, state: SupervisorState
    ) -> SupervisorStatus:
        facts = await self.load_facts(session, task)

        match decide(facts, self.policy.max_attempts):
            case SupervisorDecision.ALREADY_SUCCEEDED:
                return SupervisorStatus.SUCCEEDED
            case SupervisorDecision.RECORD_SUCCESS:
                await self.record_task_success(session, task.id)
                return SupervisorStatus.SUCCEEDED
            case SupervisorDecision.GIVE_UP:
                return self.give_up(task, facts)
            case SupervisorDecision.START_ATTEMPT:
                attempt_id = await self.start_attempt(session, task)
                self.logger.info(
                    f'{self.name} task {task.id}: started attempt {attempt_id} '
                    f'({facts.num_failures} failures so far)'
                )
                await self.schedule_recheck(session, state, facts.num_failures)
                return SupervisorStatus.ATTEMPT_SCHEDULED
            case SupervisorDecision.RECHECK:
                await self.schedule_recheck(session, state, facts.num_failures)
                return SupervisorStatus.RECHECK_SCHEDULED
