"""Integration tests: email and SMS delivery through the worker."""

from __future__ import annotations

import pytest
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.app import Chatterbox
from chatterbox.core.models.workflow_pg import EmailTemplateModel, SmsTemplateModel
from chatterbox.core.types.result import Err, is_ok
from chatterbox.core.worker.worker import Worker

from .conftest import FakeProviders, drain, fetch_all


@pytest.mark.integration
@pytest.mark.asyncio
class TestSendEmail:
    async def test_sends_created_email(
        self, app: Chatterbox, worker: Worker, providers: FakeProviders
    ) -> None:
        created = await app.create_and_kickoff_email(
            'noreply@example.com', 'user@example.com', 'Welcome', '<p>Hi</p>'
        )
        assert is_ok(created)

        await drain(app, worker)

        assert providers.calls['send_email'] == [
            {
                'message_id': created.ok_value,
                'from_address': 'noreply@example.com',
                'to_address': 'user@example.com',
                'subject': 'Welcome',
                'html': '<p>Hi</p>',
            }
        ]

    @pytest.mark.parametrize(
        'fields, failure',
        [
            ((None, 'u@example.com', 'S', 'H'), 'from_address_missing'),
            (('f@example.com', '  ', 'S', 'H'), 'to_address_missing'),
            (('f@example.com', 'u@example.com', '', 'H'), 'subject_missing'),
            (('f@example.com', 'u@example.com', 'S', None), 'html_missing'),
        ],
    )
    async def test_rejects_incomplete_email(
        self,
        app: Chatterbox,
        session: AsyncSession,
        fields: tuple[str | None, ...],
        failure: str,
    ) -> None:
        created = await app.create_and_kickoff_email(*fields)

        assert created == Err(failure)
        assert await fetch_all(session, 'SELECT id FROM comms_messages') == []

    async def test_every_kickoff_sends_again(
        self, app: Chatterbox, worker: Worker, providers: FakeProviders
    ) -> None:
        created = await app.create_and_kickoff_email(
            'noreply@example.com', 'user@example.com', 'Reminder', '<p>Again</p>'
        )
        assert await app.kickoff_send_email(created.ok_value) is None

        await drain(app, worker)

        assert len(providers.calls['send_email']) == 2

    async def test_provider_failure_gives_up(
        self,
        app: Chatterbox,
        worker: Worker,
        providers: FakeProviders,
        session: AsyncSession,
    ) -> None:
        providers.failing.add('send_email')
        await app.create_and_kickoff_email(
            'noreply@example.com', 'user@example.com', 'Welcome', '<p>Hi</p>'
        )

        await drain(app, worker)

        max_attempts = app.config.workflows.send_email.max_attempts
        assert len(providers.calls['send_email']) == max_attempts
        failures = await fetch_all(session, 'SELECT attempt_id FROM send_email_attempts_failed')
        assert len(failures) == max_attempts
        assert await fetch_all(session, 'SELECT attempt_id FROM send_email_attempts_succeeded') == []

    async def test_kickoff_validation(self, app: Chatterbox) -> None:
        assert await app.kickoff_send_email(None) == 'missing_message_id'
        assert await app.kickoff_send_email(424242) == 'message_not_found'

    async def test_kickoff_rejects_message_of_other_channel(self, app: Chatterbox) -> None:
        sms = await app.create_and_kickoff_sms('+15550001111', 'hello')

        assert await app.kickoff_send_email(sms.ok_value) == 'message_not_found'

    async def test_templated_email(
        self,
        app: Chatterbox,
        worker: Worker,
        providers: FakeProviders,
        session: AsyncSession,
    ) -> None:
        await session.execute(
            insert(EmailTemplateModel).values(
                template_key='welcome',
                subject='Welcome ${name}',
                body='<p>Hello ${name}, your code is ${code}</p>',
                body_params=['name', 'code'],
            )
        )
        await session.commit()

        created = await app.send_templated_email(
            'welcome', {'name': 'Ada', 'code': 1234}, 'noreply@example.com', 'ada@example.com'
        )
        assert is_ok(created)
        await drain(app, worker)

        sent = providers.calls['send_email'][0]
        assert sent['subject'] == 'Welcome Ada'
        assert sent['html'] == '<p>Hello Ada, your code is 1234</p>'

    async def test_unknown_template(self, app: Chatterbox) -> None:
        created = await app.send_templated_email(
            'missing', {}, 'noreply@example.com', 'ada@example.com'
        )
        assert created == Err('template_not_found')


@pytest.mark.integration
@pytest.mark.asyncio
class TestSendSms:
    async def test_sends_created_sms(
        self, app: Chatterbox, worker: Worker, providers: FakeProviders
    ) -> None:
        created = await app.create_and_kickoff_sms('+15550001111', 'Your code is 42')
        assert is_ok(created)

        await drain(app, worker)

        assert providers.calls['send_sms'] == [
            {'message_id': created.ok_value, 'to_number': '+15550001111', 'body': 'Your code is 42'}
        ]

    async def test_rejects_missing_body(self, app: Chatterbox) -> None:
        assert await app.create_and_kickoff_sms('+15550001111', '') == Err('body_missing')
        assert await app.create_and_kickoff_sms(None, 'hi') == Err('to_number_missing')

    async def test_templated_sms_keeps_unknown_placeholders(
        self,
        app: Chatterbox,
        worker: Worker,
        providers: FakeProviders,
        session: AsyncSession,
    ) -> None:
        await session.execute(
            insert(SmsTemplateModel).values(
                template_key='otp',
                body='Code ${code} expires ${when}',
                body_params=['code'],
            )
        )
        await session.commit()

        created = await app.send_templated_sms(
            'otp', {'code': '9999', 'when': 'soon'}, '+15550001111'
        )
        assert is_ok(created)
        await drain(app, worker)

        assert providers.calls['send_sms'][0]['body'] == 'Code 9999 expires ${when}'
