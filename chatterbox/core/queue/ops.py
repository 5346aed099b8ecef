# chatterbox/core/queue/ops.py
"""
Queue operations bound to a caller-owned session.

These run inside whatever transaction the caller holds, so a supervisor
can append an attempt row and enqueue the task that acts on it atomically.
Commit/rollback is the caller's job.
"""

from __future__ import annotations

import datetime
from typing import Any, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.defaults import DEFAULT_LEASE_SECONDS, MAX_CLAIM_ROUNDS
from chatterbox.core.logging import get_logger
from chatterbox.core.models.task_pg import TaskModel
from chatterbox.core.models.tasks import QueuedTask, TaskInfo
from chatterbox.core.queue.sql import (
    COMPLETE_TASK_SQL,
    FAIL_TASK_SQL,
    INSERT_LEASE_SQL,
    SELECT_CLAIM_CANDIDATE_SQL,
    SELECT_TASK_SQL,
    TASK_ERRORS_SQL,
    TASK_INFO_SQL,
)
from chatterbox.core.types.status import TaskType

logger = get_logger('queue')


async def enqueue(
    session: AsyncSession,
    task_type: TaskType,
    payload: dict[str, Any],
    scheduled_at: Optional[datetime.datetime] = None,
) -> int:
    """Insert a task; it becomes claimable at `scheduled_at` (default: now)."""
    values: dict[str, Any] = {'task_type': task_type, 'payload': payload}
    if scheduled_at is not None:
        values['scheduled_at'] = scheduled_at

    result = await session.execute(
        insert(TaskModel).values(**values).returning(TaskModel.id)
    )
    task_id = int(result.scalar_one())
    logger.debug(f'Enqueued {task_type.value} task {task_id}')
    return task_id


async def dequeue_next_available_task(
    session: AsyncSession,
    lease_seconds: int = DEFAULT_LEASE_SECONDS,
) -> Optional[QueuedTask]:
    """
    Claim the oldest available task by (scheduled_at, id), or return None.

    A candidate whose lease insert comes back empty was claimed by a
    concurrent caller between our two statements; look for the next one.
    """
    for _ in range(MAX_CLAIM_ROUNDS):
        candidate = await session.execute(SELECT_CLAIM_CANDIDATE_SQL)
        task_id = candidate.scalar_one_or_none()
        if task_id is None:
            return None

        lease = await session.execute(
            INSERT_LEASE_SQL, {'task_id': task_id, 'lease_seconds': lease_seconds}
        )
        lease_expires_at = lease.scalar_one_or_none()
        if lease_expires_at is None:
            logger.debug(f'Lost claim race for task {task_id}, retrying')
            continue

        row = (await session.execute(SELECT_TASK_SQL, {'task_id': task_id})).one()
        return QueuedTask(
            id=int(row.id),
            task_type=TaskType(row.task_type),
            payload=dict(row.payload or {}),
            enqueued_at=row.enqueued_at,
            scheduled_at=row.scheduled_at,
            lease_expires_at=lease_expires_at,
        )

    logger.warning(f'No task claimed after {MAX_CLAIM_ROUNDS} contended rounds')
    return None


async def complete_task(session: AsyncSession, task_id: int) -> bool:
    """Record the completion fact. False when already completed or unknown."""
    result = await session.execute(COMPLETE_TASK_SQL, {'task_id': task_id})
    return result.scalar_one_or_none() is not None


async def fail_task(session: AsyncSession, task_id: int, message: str) -> int:
    """Append an error row and return its id. Availability is unaffected."""
    result = await session.execute(
        FAIL_TASK_SQL, {'task_id': task_id, 'message': message}
    )
    return int(result.scalar_one())


async def get_task_info(session: AsyncSession, task_id: int) -> Optional[TaskInfo]:
    row = (await session.execute(TASK_INFO_SQL, {'task_id': task_id})).one_or_none()
    if row is None:
        return None

    errors = (await session.execute(TASK_ERRORS_SQL, {'task_id': task_id})).scalars()
    return TaskInfo(
        task_id=int(row.id),
        task_type=TaskType(row.task_type),
        payload=dict(row.payload or {}),
        enqueued_at=row.enqueued_at,
        scheduled_at=row.scheduled_at,
        completed_at=row.completed_at,
        lease_count=int(row.lease_count),
        active_lease_expires_at=row.active_lease_expires_at,
        errors=[str(message) for message in errors],
    )
