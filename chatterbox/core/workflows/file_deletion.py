# chatterbox/core/workflows/file_deletion.py
"""
Per-file deletion.

A file counts as deleted once it carries a `deleted` = true metadata row.
The object itself is removed by the worker's `delete_file` provider; the
success handler then writes the metadata row and the attempt's success fact.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import literal, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.models.workflow_pg import (
    FileDeletionAttemptFailedModel,
    FileDeletionAttemptModel,
    FileDeletionAttemptSucceededModel,
    FileDeletionTaskModel,
    FileMetadataModel,
    FileModel,
)
from chatterbox.core.supervisor.base import (
    FactTables,
    RetryingSupervisor,
    attempt_id_from,
    provider_task_payload,
)
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.status import FactOutcome, TaskType

DELETED_METADATA_KEY = 'deleted'


def file_is_deleted_clause(file_id_column: Any) -> Any:
    """EXISTS clause: the file referenced by `file_id_column` is marked deleted."""
    return (
        select(FileMetadataModel.id)
        .where(
            FileMetadataModel.file_id == file_id_column,
            FileMetadataModel.key == DELETED_METADATA_KEY,
            FileMetadataModel.value == literal(True, JSONB),
        )
        .exists()
    )


async def is_file_deleted(session: AsyncSession, file_id: int) -> bool:
    result = await session.execute(select(file_is_deleted_clause(literal(file_id))))
    return bool(result.scalar())


async def mark_file_deleted(session: AsyncSession, file_id: int) -> None:
    stmt = pg_insert(FileMetadataModel).values(
        file_id=file_id, key=DELETED_METADATA_KEY, value=True
    )
    await session.execute(
        stmt.on_conflict_do_update(
            index_elements=['file_id', 'key'],
            set_={'value': stmt.excluded.value},
        )
    )


class FileDeletionSupervisor(RetryingSupervisor):
    name = 'file_deletion'
    handler = HandlerId.FILE_DELETION_SUPERVISOR
    tables = FactTables(
        task=FileDeletionTaskModel,
        attempt=FileDeletionAttemptModel,
        succeeded=FileDeletionAttemptSucceededModel,
        failed=FileDeletionAttemptFailedModel,
        key='file_id',
    )

    async def is_done(self, session: AsyncSession, task: FileDeletionTaskModel) -> bool:
        return await is_file_deleted(session, task.file_id)

    def build_attempt_task(
        self, task: FileDeletionTaskModel, attempt_id: int
    ) -> tuple[TaskType, dict[str, Any]]:
        return TaskType.FILE_DELETE, provider_task_payload(
            TaskType.FILE_DELETE,
            attempt_id,
            before=HandlerId.GET_FILE_DELETE_PAYLOAD,
            success=HandlerId.RECORD_FILE_DELETE_SUCCESS,
            error=HandlerId.RECORD_FILE_DELETE_FAILURE,
        )

    async def validate_kickoff(
        self, session: AsyncSession, key: Optional[int]
    ) -> Optional[str]:
        if key is None:
            return 'missing_file_id'
        # Serializes concurrent kickoffs for the same file.
        found = await session.execute(
            select(FileModel.id).where(FileModel.id == key).with_for_update(key_share=True)
        )
        if found.scalar_one_or_none() is None:
            return 'file_not_found'
        return None

    async def file_for_attempt(self, session: AsyncSession, attempt_id: int) -> Optional[FileModel]:
        T, A = self.tables.task, self.tables.attempt
        result = await session.execute(
            select(FileModel)
            .join(T, T.file_id == FileModel.id)
            .join(A, A.task_id == T.id)
            .where(A.id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def get_payload(self, session: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
        """Before handler: where the object to delete lives."""
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        file = await self.file_for_attempt(session, attempt_id)
        if file is None:
            return {'status': 'file_not_found_for_deletion'}
        return {
            'status': 'succeeded',
            'payload': {
                'file_id': file.id,
                'bucket': file.bucket,
                'object_key': file.object_key,
            },
        }

    async def handle_success(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}

        outcome = await self.record_attempt_success(session, attempt_id)
        if outcome is FactOutcome.ATTEMPT_NOT_FOUND:
            return {'status': outcome.value}

        # The object is gone whatever the fact outcome says.
        file = await self.file_for_attempt(session, attempt_id)
        if file is not None:
            await mark_file_deleted(session, file.id)
        return {'status': outcome.value}

    async def is_file_deletion_stuck(self, session: AsyncSession, file_id: int) -> bool:
        return await self.is_stuck(session, file_id)
