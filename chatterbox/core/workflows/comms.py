# chatterbox/core/workflows/comms.py
"""
Outbound email and SMS.

A message is stored first, then a send task is kicked off for it. Every
kickoff creates a new task: one message, one send.
"""

from __future__ import annotations

from abc import abstractmethod
from datetime import datetime
from typing import Any, ClassVar, Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.models.workflow_pg import (
    EmailMessageModel,
    MessageModel,
    SendEmailAttemptFailedModel,
    SendEmailAttemptModel,
    SendEmailAttemptSucceededModel,
    SendEmailTaskModel,
    SendSmsAttemptFailedModel,
    SendSmsAttemptModel,
    SendSmsAttemptSucceededModel,
    SendSmsTaskModel,
    SmsMessageModel,
)
from chatterbox.core.supervisor.base import (
    FactTables,
    KickoffGate,
    RetryingSupervisor,
    attempt_id_from,
    provider_task_payload,
)
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.result import Err, Ok, Result, is_err
from chatterbox.core.types.status import TaskType
from chatterbox.core.workflows.templates import render_email_template, render_sms_template

EMAIL_CHANNEL = 'email'
SMS_CHANNEL = 'sms'


def _is_blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ''


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


async def _insert_message(session: AsyncSession, channel: str) -> int:
    result = await session.execute(
        insert(MessageModel).values(channel=channel).returning(MessageModel.id)
    )
    return int(result.scalar_one())


async def create_email_message(
    session: AsyncSession,
    from_address: Optional[str],
    to_address: Optional[str],
    subject: Optional[str],
    html: Optional[str],
) -> Result[int, str]:
    """Store an email message. Ok(message_id) or Err(validation failure)."""
    if _is_blank(from_address):
        return Err('from_address_missing')
    if _is_blank(to_address):
        return Err('to_address_missing')
    if _is_blank(subject):
        return Err('subject_missing')
    if _is_blank(html):
        return Err('html_missing')

    message_id = await _insert_message(session, EMAIL_CHANNEL)
    await session.execute(
        insert(EmailMessageModel).values(
            message_id=message_id,
            from_address=from_address,
            to_address=to_address,
            subject=subject,
            html=html,
        )
    )
    return Ok(message_id)


async def create_sms_message(
    session: AsyncSession,
    to_number: Optional[str],
    body: Optional[str],
) -> Result[int, str]:
    """Store an SMS message. Ok(message_id) or Err(validation failure)."""
    if _is_blank(to_number):
        return Err('to_number_missing')
    if _is_blank(body):
        return Err('body_missing')

    message_id = await _insert_message(session, SMS_CHANNEL)
    await session.execute(
        insert(SmsMessageModel).values(message_id=message_id, to_number=to_number, body=body)
    )
    return Ok(message_id)


# ---------------------------------------------------------------------------
# Send supervisors
# ---------------------------------------------------------------------------


class _SendMessageSupervisor(RetryingSupervisor):
    kickoff_gate = KickoffGate.ALWAYS_NEW

    channel: ClassVar[str]
    task_type: ClassVar[TaskType]
    message_model: ClassVar[type[Any]]
    before_handler: ClassVar[HandlerId]
    success_handler: ClassVar[HandlerId]
    error_handler: ClassVar[HandlerId]

    def build_attempt_task(self, task: Any, attempt_id: int) -> tuple[TaskType, dict[str, Any]]:
        return self.task_type, provider_task_payload(
            self.task_type,
            attempt_id,
            before=self.before_handler,
            success=self.success_handler,
            error=self.error_handler,
        )

    async def validate_kickoff(
        self, session: AsyncSession, key: Optional[int]
    ) -> Optional[str]:
        if key is None:
            return 'missing_message_id'
        found = await session.execute(
            select(MessageModel.id).where(
                MessageModel.id == key, MessageModel.channel == self.channel
            )
        )
        if found.scalar_one_or_none() is None:
            return 'message_not_found'
        return None

    async def message_for_attempt(self, session: AsyncSession, attempt_id: int) -> Optional[Any]:
        M, T, A = self.message_model, self.tables.task, self.tables.attempt
        result = await session.execute(
            select(M)
            .join(T, T.message_id == M.message_id)
            .join(A, A.task_id == T.id)
            .where(A.id == attempt_id)
        )
        return result.scalar_one_or_none()

    @abstractmethod
    def message_payload(self, message: Any) -> dict[str, Any]:
        """Provider input for one stored message."""

    async def get_payload(self, session: AsyncSession, payload: dict[str, Any]) -> dict[str, Any]:
        """Before handler: the provider input for the attempt in `payload`."""
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        message = await self.message_for_attempt(session, attempt_id)
        if message is None:
            return {'status': 'message_not_found'}
        return {'status': 'succeeded', 'payload': self.message_payload(message)}


class SendEmailSupervisor(_SendMessageSupervisor):
    name = 'send_email'
    handler = HandlerId.SEND_EMAIL_SUPERVISOR
    tables = FactTables(
        task=SendEmailTaskModel,
        attempt=SendEmailAttemptModel,
        succeeded=SendEmailAttemptSucceededModel,
        failed=SendEmailAttemptFailedModel,
        key='message_id',
    )
    channel = EMAIL_CHANNEL
    task_type = TaskType.EMAIL
    message_model = EmailMessageModel
    before_handler = HandlerId.GET_EMAIL_PAYLOAD
    success_handler = HandlerId.RECORD_EMAIL_SUCCESS
    error_handler = HandlerId.RECORD_EMAIL_FAILURE

    def message_payload(self, message: EmailMessageModel) -> dict[str, Any]:
        return {
            'message_id': message.message_id,
            'from_address': message.from_address,
            'to_address': message.to_address,
            'subject': message.subject,
            'html': message.html,
        }

    async def create_and_kickoff(
        self,
        session: AsyncSession,
        from_address: Optional[str],
        to_address: Optional[str],
        subject: Optional[str],
        html: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        created = await create_email_message(session, from_address, to_address, subject, html)
        if is_err(created):
            return created
        failure = await self.kickoff(session, created.ok_value, scheduled_at)
        if failure is not None:
            return Err(failure)
        return created

    async def create_and_kickoff_from_template(
        self,
        session: AsyncSession,
        template_key: str,
        params: dict[str, Any],
        from_address: Optional[str],
        to_address: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        rendered = await render_email_template(session, template_key, params)
        if rendered is None:
            return Err('template_not_found')
        return await self.create_and_kickoff(
            session, from_address, to_address, rendered.subject, rendered.html, scheduled_at
        )


class SendSmsSupervisor(_SendMessageSupervisor):
    name = 'send_sms'
    handler = HandlerId.SEND_SMS_SUPERVISOR
    tables = FactTables(
        task=SendSmsTaskModel,
        attempt=SendSmsAttemptModel,
        succeeded=SendSmsAttemptSucceededModel,
        failed=SendSmsAttemptFailedModel,
        key='message_id',
    )
    channel = SMS_CHANNEL
    task_type = TaskType.SMS
    message_model = SmsMessageModel
    before_handler = HandlerId.GET_SMS_PAYLOAD
    success_handler = HandlerId.RECORD_SMS_SUCCESS
    error_handler = HandlerId.RECORD_SMS_FAILURE

    def message_payload(self, message: SmsMessageModel) -> dict[str, Any]:
        return {
            'message_id': message.message_id,
            'to_number': message.to_number,
            'body': message.body,
        }

    async def create_and_kickoff(
        self,
        session: AsyncSession,
        to_number: Optional[str],
        body: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        created = await create_sms_message(session, to_number, body)
        if is_err(created):
            return created
        failure = await self.kickoff(session, created.ok_value, scheduled_at)
        if failure is not None:
            return Err(failure)
        return created

    async def create_and_kickoff_from_template(
        self,
        session: AsyncSession,
        template_key: str,
        params: dict[str, Any],
        to_number: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        body = await render_sms_template(session, template_key, params)
        if body is None:
            return Err('template_not_found')
        return await self.create_and_kickoff(session, to_number, body, scheduled_at)
