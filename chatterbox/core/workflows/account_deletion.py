# chatterbox/core/workflows/account_deletion.py
"""
Account deletion: a root supervisor over two child workflows.

Phases run strictly in order, one step per invocation:

1. file deletion for every undeleted file the account owns
2. anonymization, only once no undeleted files remain
3. success

A stuck child fails the root permanently. The root has a single attempt,
opened on its first run; it is never retried.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.models.app import SupervisorPolicy
from chatterbox.core.models.workflow_pg import (
    AccountDeletionAttemptFailedModel,
    AccountDeletionAttemptModel,
    AccountDeletionAttemptSucceededModel,
    AccountDeletionTaskModel,
    AccountModel,
    FileModel,
    RecordingModel,
)
from chatterbox.core.supervisor.backoff import utc_now
from chatterbox.core.supervisor.base import AttemptSupervisor, FactTables
from chatterbox.core.supervisor.state import SupervisorState
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.status import SupervisorStatus
from chatterbox.core.workflows.anonymization import (
    DELETED_FLAG,
    AccountAnonymizationSupervisor,
    add_account_flag,
    is_account_anonymized,
)
from chatterbox.core.workflows.file_deletion import (
    FileDeletionSupervisor,
    file_is_deleted_clause,
)
from chatterbox.core.workflows.responses import error_payload, success_payload

FILE_DELETION_FAILED = 'one or more file deletions permanently failed'
ANONYMIZATION_FAILED = 'account anonymization permanently failed'

REQUEST_FAILED = 'Request Account Deletion Failed'


async def account_files(session: AsyncSession, account_id: int) -> list[FileModel]:
    """Undeleted files owned by the account, in id order."""
    result = await session.execute(
        select(FileModel)
        .where(
            FileModel.id.in_(
                select(RecordingModel.file_id).where(RecordingModel.account_id == account_id)
            ),
            ~file_is_deleted_clause(FileModel.id),
        )
        .order_by(FileModel.id)
    )
    return list(result.scalars())


class AccountDeletionSupervisor(AttemptSupervisor):
    name = 'account_deletion'
    handler = HandlerId.ACCOUNT_DELETION_SUPERVISOR
    tables = FactTables(
        task=AccountDeletionTaskModel,
        attempt=AccountDeletionAttemptModel,
        succeeded=AccountDeletionAttemptSucceededModel,
        failed=AccountDeletionAttemptFailedModel,
        key='account_id',
    )

    def __init__(
        self,
        policy: SupervisorPolicy,
        *,
        file_deletion: FileDeletionSupervisor,
        anonymization: AccountAnonymizationSupervisor,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(policy, clock=clock)
        self.file_deletion = file_deletion
        self.anonymization = anonymization

    async def supervise(
        self,
        session: AsyncSession,
        task: AccountDeletionTaskModel,
        state: SupervisorState,
    ) -> SupervisorStatus:
        facts = await self.count_facts(session, task.id)
        if facts.has_succeeded:
            return SupervisorStatus.SUCCEEDED
        if facts.num_failures >= self.policy.max_attempts:
            return self.give_up(task, facts)
        if not facts.has_outstanding_attempt:
            await self.insert_attempt(session, task.id)

        # Phase 1: files.
        files = await account_files(session, task.account_id)
        if files:
            for file in files:
                if await self.file_deletion.is_file_deletion_stuck(session, file.id):
                    return await self.fail_permanently(session, task, FILE_DELETION_FAILED)
            for file in files:
                failure = await self.file_deletion.kickoff(session, file.id)
                if failure is not None:
                    self.logger.warning(
                        f'{self.name} task {task.id}: file {file.id} kickoff rejected: {failure}'
                    )
            await self.schedule_recheck(session, state, facts.num_failures)
            return SupervisorStatus.AWAITING_FILE_DELETION

        # Phase 2: anonymization.
        if not await is_account_anonymized(session, task.account_id):
            if await self.anonymization.is_account_anonymization_stuck(session, task.account_id):
                return await self.fail_permanently(session, task, ANONYMIZATION_FAILED)
            failure = await self.anonymization.kickoff(session, task.account_id)
            if failure is not None:
                return await self.fail_permanently(session, task, failure)
            await self.schedule_recheck(session, state, facts.num_failures)
            return SupervisorStatus.AWAITING_ANONYMIZATION

        # Phase 3: done.
        await self.record_task_success(session, task.id)
        self.logger.info(f'{self.name} task {task.id}: account {task.account_id} deleted')
        return SupervisorStatus.SUCCEEDED

    async def fail_permanently(
        self,
        session: AsyncSession,
        task: AccountDeletionTaskModel,
        message: str,
    ) -> SupervisorStatus:
        attempt_id = await self.latest_open_attempt_id(session, task.id)
        if attempt_id is None:
            attempt_id = await self.insert_attempt(session, task.id)
        await self.record_attempt_failure(session, attempt_id, message)
        self.logger.error(
            f'{self.name} task {task.id} for account {task.account_id} failed: {message}'
        )
        return SupervisorStatus.FAILED

    async def validate_kickoff(
        self, session: AsyncSession, key: Optional[int]
    ) -> Optional[str]:
        if key is None:
            return 'missing_account_id'
        found = await session.execute(
            select(AccountModel.id).where(AccountModel.id == key).with_for_update(key_share=True)
        )
        if found.scalar_one_or_none() is None:
            return 'account_not_found'
        return None

    async def kickoff(
        self,
        session: AsyncSession,
        key: Optional[int],
        scheduled_at: Optional[datetime] = None,
        **task_values: Any,
    ) -> Optional[str]:
        """Start deletion and mark the account `deleted` right away."""
        failure = await super().kickoff(session, key, scheduled_at, **task_values)
        if failure is None and key is not None:
            await add_account_flag(session, key, DELETED_FLAG)
        return failure

    async def request_account_deletion(
        self,
        session: AsyncSession,
        account_id: Optional[int],
        authenticated_account_id: Optional[int],
    ) -> dict[str, Any]:
        """User-facing entry point: an account may only delete itself."""
        if account_id is None:
            return error_payload(REQUEST_FAILED, 'Invalid Request Payload', 'missing_account_id')
        if authenticated_account_id is None or account_id != authenticated_account_id:
            return error_payload(
                REQUEST_FAILED, 'Unauthorized', 'unauthorized_to_request_account_deletion'
            )

        failure = await self.kickoff(session, account_id)
        if failure is not None:
            return error_payload(REQUEST_FAILED, 'Invalid Request Payload', failure)
        return success_payload()
