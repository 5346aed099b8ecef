# chatterbox/core/workflows/anonymization.py
"""
Account anonymization: scrub PII in place and mark the account `anonymized`.

The scrub itself runs as a db_function task whose success and error
handlers record the attempt facts.
"""

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.models.workflow_pg import (
    AccountAnonymizationAttemptFailedModel,
    AccountAnonymizationAttemptModel,
    AccountAnonymizationAttemptSucceededModel,
    AccountAnonymizationTaskModel,
    AccountFlagModel,
    AccountModel,
)
from chatterbox.core.supervisor.base import (
    FactTables,
    RetryingSupervisor,
    attempt_id_from,
    db_function_payload,
)
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.status import TaskType

ANONYMIZED_FLAG = 'anonymized'
DELETED_FLAG = 'deleted'

PHONE_NUMBER_OFFSET = 1000000000000


def anonymous_email(account_id: int) -> str:
    return f'anonymous_{account_id}@deletedemail.non'


def anonymous_phone_number(account_id: int) -> str:
    return '+' + str(PHONE_NUMBER_OFFSET + account_id)


async def add_account_flag(session: AsyncSession, account_id: int, flag: str) -> None:
    await session.execute(
        pg_insert(AccountFlagModel)
        .values(account_id=account_id, flag=flag)
        .on_conflict_do_nothing(index_elements=['account_id', 'flag'])
    )


async def has_account_flag(session: AsyncSession, account_id: int, flag: str) -> bool:
    result = await session.execute(
        select(
            select(AccountFlagModel.id)
            .where(AccountFlagModel.account_id == account_id, AccountFlagModel.flag == flag)
            .exists()
        )
    )
    return bool(result.scalar())


async def is_account_anonymized(session: AsyncSession, account_id: int) -> bool:
    return await has_account_flag(session, account_id, ANONYMIZED_FLAG)


async def anonymize_account_record(session: AsyncSession, account_id: int) -> bool:
    """Scrub PII columns. False if the account does not exist."""
    result = await session.execute(
        update(AccountModel)
        .where(AccountModel.id == account_id)
        .values(
            email=anonymous_email(account_id),
            phone_number=anonymous_phone_number(account_id),
            hashed_password=None,
        )
        .returning(AccountModel.id)
    )
    if result.scalar_one_or_none() is None:
        return False
    await add_account_flag(session, account_id, ANONYMIZED_FLAG)
    return True


class AccountAnonymizationSupervisor(RetryingSupervisor):
    name = 'account_anonymization'
    handler = HandlerId.ACCOUNT_ANONYMIZATION_SUPERVISOR
    tables = FactTables(
        task=AccountAnonymizationTaskModel,
        attempt=AccountAnonymizationAttemptModel,
        succeeded=AccountAnonymizationAttemptSucceededModel,
        failed=AccountAnonymizationAttemptFailedModel,
        key='account_id',
    )

    async def is_done(self, session: AsyncSession, task: AccountAnonymizationTaskModel) -> bool:
        return await is_account_anonymized(session, task.account_id)

    def build_attempt_task(
        self, task: AccountAnonymizationTaskModel, attempt_id: int
    ) -> tuple[TaskType, dict[str, Any]]:
        return TaskType.DB_FUNCTION, db_function_payload(
            HandlerId.ANONYMIZE_ACCOUNT,
            success=HandlerId.RECORD_ANONYMIZATION_SUCCESS,
            error=HandlerId.RECORD_ANONYMIZATION_FAILURE,
            attempt_id=attempt_id,
        )

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

    async def account_id_for_attempt(
        self, session: AsyncSession, attempt_id: int
    ) -> Optional[int]:
        T, A = self.tables.task, self.tables.attempt
        result = await session.execute(
            select(T.account_id).join(A, A.task_id == T.id).where(A.id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def anonymize_account(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """db_function handler for one anonymization attempt."""
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        account_id = await self.account_id_for_attempt(session, attempt_id)
        if account_id is None or not await anonymize_account_record(session, account_id):
            return {'status': 'account_not_found'}
        self.logger.info(f'Anonymized account {account_id}')
        return {'status': 'succeeded', 'account_id': account_id}

    async def is_account_anonymization_stuck(
        self, session: AsyncSession, account_id: int
    ) -> bool:
        return await self.is_stuck(session, account_id)
