# chatterbox/core/app.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatterbox.core.errors import (
    ChatterboxError,
    ConfigurationError,
    ErrorCode,
    RegistryError,
)
from chatterbox.core.logging import get_logger
from chatterbox.core.models.app import AppConfig
from chatterbox.core.queue import PostgresTaskQueue, QueueResult
from chatterbox.core.registry.handlers import HandlerRegistry
from chatterbox.core.registry.runner import FunctionRunner
from chatterbox.core.supervisor.backoff import utc_now
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.result import Result
from chatterbox.core.worker.config import WorkerConfig
from chatterbox.core.worker.providers import ProviderSet
from chatterbox.core.worker.worker import Worker
from chatterbox.core.workflows.account_deletion import AccountDeletionSupervisor
from chatterbox.core.workflows.anonymization import AccountAnonymizationSupervisor
from chatterbox.core.workflows.comms import SendEmailSupervisor, SendSmsSupervisor
from chatterbox.core.workflows.file_deletion import FileDeletionSupervisor
from chatterbox.core.workflows.transcription import (
    RecordingTranscriptionSupervisor,
    record_transcription_webhook,
)

T = TypeVar('T')

HEALTH_CHECK_SQL = text("""SELECT 1""")


class Chatterbox:
    """
    Configuration-driven application object.

    Wires every supervisor (each with its injected policy) into one handler
    registry, and exposes the business entry points. Each entry point runs
    in its own transaction.
    """

    def __init__(
        self,
        config: AppConfig,
        providers: Optional[ProviderSet] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.providers = providers
        self.logger = get_logger('app')
        self._queue: Optional[PostgresTaskQueue] = None
        self._runner: Optional[FunctionRunner] = None

        workflows = config.workflows
        self.send_email = SendEmailSupervisor(workflows.send_email, clock=clock)
        self.send_sms = SendSmsSupervisor(workflows.send_sms, clock=clock)
        self.file_deletion = FileDeletionSupervisor(workflows.file_deletion, clock=clock)
        self.anonymization = AccountAnonymizationSupervisor(
            workflows.account_anonymization, clock=clock
        )
        self.account_deletion = AccountDeletionSupervisor(
            workflows.account_deletion,
            file_deletion=self.file_deletion,
            anonymization=self.anonymization,
            clock=clock,
        )
        self.transcription = RecordingTranscriptionSupervisor(
            workflows.recording_transcription, clock=clock
        )

        self.handlers = self._build_registry()
        self.logger.info(f'chatterbox initialized with {len(self.handlers)} handlers')

    def _build_registry(self) -> HandlerRegistry:
        registry = HandlerRegistry(
            {
                # comms: email
                HandlerId.SEND_EMAIL_SUPERVISOR: self.send_email.run,
                HandlerId.GET_EMAIL_PAYLOAD: self.send_email.get_payload,
                HandlerId.RECORD_EMAIL_SUCCESS: self.send_email.handle_success,
                HandlerId.RECORD_EMAIL_FAILURE: self.send_email.handle_failure,
                # comms: sms
                HandlerId.SEND_SMS_SUPERVISOR: self.send_sms.run,
                HandlerId.GET_SMS_PAYLOAD: self.send_sms.get_payload,
                HandlerId.RECORD_SMS_SUCCESS: self.send_sms.handle_success,
                HandlerId.RECORD_SMS_FAILURE: self.send_sms.handle_failure,
                # file deletion
                HandlerId.FILE_DELETION_SUPERVISOR: self.file_deletion.run,
                HandlerId.GET_FILE_DELETE_PAYLOAD: self.file_deletion.get_payload,
                HandlerId.RECORD_FILE_DELETE_SUCCESS: self.file_deletion.handle_success,
                HandlerId.RECORD_FILE_DELETE_FAILURE: self.file_deletion.handle_failure,
                # account anonymization
                HandlerId.ACCOUNT_ANONYMIZATION_SUPERVISOR: self.anonymization.run,
                HandlerId.ANONYMIZE_ACCOUNT: self.anonymization.anonymize_account,
                HandlerId.RECORD_ANONYMIZATION_SUCCESS: self.anonymization.handle_success,
                HandlerId.RECORD_ANONYMIZATION_FAILURE: self.anonymization.handle_failure,
                # account deletion
                HandlerId.ACCOUNT_DELETION_SUPERVISOR: self.account_deletion.run,
                # recording transcription
                HandlerId.RECORDING_TRANSCRIPTION_SUPERVISOR: self.transcription.run,
                HandlerId.GET_TRANSCRIPTION_KICKOFF_PAYLOAD: self.transcription.get_kickoff_payload,
                HandlerId.RECORD_TRANSCRIPTION_REQUEST_SUCCESS: self.transcription.record_request_success,
                HandlerId.RECORD_TRANSCRIPTION_REQUEST_FAILURE: self.transcription.handle_failure,
            }
        )
        missing = registry.missing()
        if missing:
            raise RegistryError(
                message='handler ids without an implementation',
                code=ErrorCode.HANDLER_NOT_REGISTERED,
                notes=[handler_id.value for handler_id in missing],
            )
        return registry

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    def get_queue(self) -> PostgresTaskQueue:
        """Get the configured PostgreSQL queue for this app."""
        if self._queue is None:
            self._queue = PostgresTaskQueue(
                self.config.broker, lease_seconds=self.config.lease_seconds
            )
        return self._queue

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self.get_queue().session_factory

    def get_runner(self) -> FunctionRunner:
        if self._runner is None:
            self._runner = FunctionRunner(self.handlers, self.session_factory)
        return self._runner

    def create_worker(self, cfg: Optional[WorkerConfig] = None) -> Worker:
        if self.providers is None:
            raise ConfigurationError(
                message='worker requires providers',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                help_text='pass a ProviderSet to Chatterbox(config, providers)',
            )
        return Worker(
            self.get_queue(),
            self.get_runner(),
            self.providers,
            cfg or WorkerConfig(),
            resilience=self.config.resilience,
        )

    async def ensure_schema(self) -> QueueResult[None]:
        return await self.get_queue().ensure_schema_initialized()

    async def check(self, *, live: bool = False) -> list[ChatterboxError]:
        """Collect startup problems; `live` also runs SELECT 1 against the broker."""
        errors: list[ChatterboxError] = []
        if self.config.workflows.recording_transcription.webhook_secret is None:
            self.logger.warning('No webhook_secret configured: transcription responses will fail')
        if not live:
            return errors
        try:
            async with self.session_factory() as session:
                await session.execute(HEALTH_CHECK_SQL)
        except Exception as exc:
            errors.append(
                ConfigurationError(
                    message='broker connectivity check failed',
                    code=ErrorCode.BROKER_INVALID_URL,
                    notes=[str(exc)],
                    help_text='check database_url in PostgresConfig',
                )
            )
        return errors

    async def close(self) -> None:
        if self._queue is not None:
            await self._queue.close_async()

    async def _transaction(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.session_factory() as session, session.begin():
            return await operation(session)

    async def run_function(self, name: object, payload: dict[str, Any]) -> dict[str, Any]:
        return await self.get_runner().run_function(name, payload)

    # ------------------------------------------------------------------
    # Comms
    # ------------------------------------------------------------------

    async def kickoff_send_email(
        self, message_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.send_email.kickoff(session, message_id, scheduled_at)
        )

    async def kickoff_send_sms(
        self, message_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.send_sms.kickoff(session, message_id, scheduled_at)
        )

    async def create_and_kickoff_email(
        self,
        from_address: Optional[str],
        to_address: Optional[str],
        subject: Optional[str],
        html: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        return await self._transaction(
            lambda session: self.send_email.create_and_kickoff(
                session, from_address, to_address, subject, html, scheduled_at
            )
        )

    async def create_and_kickoff_sms(
        self,
        to_number: Optional[str],
        body: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        return await self._transaction(
            lambda session: self.send_sms.create_and_kickoff(
                session, to_number, body, scheduled_at
            )
        )

    async def send_templated_email(
        self,
        template_key: str,
        params: dict[str, Any],
        from_address: Optional[str],
        to_address: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        return await self._transaction(
            lambda session: self.send_email.create_and_kickoff_from_template(
                session, template_key, params, from_address, to_address, scheduled_at
            )
        )

    async def send_templated_sms(
        self,
        template_key: str,
        params: dict[str, Any],
        to_number: Optional[str],
        scheduled_at: Optional[datetime] = None,
    ) -> Result[int, str]:
        return await self._transaction(
            lambda session: self.send_sms.create_and_kickoff_from_template(
                session, template_key, params, to_number, scheduled_at
            )
        )

    # ------------------------------------------------------------------
    # Files and accounts
    # ------------------------------------------------------------------

    async def kickoff_file_deletion(
        self, file_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.file_deletion.kickoff(session, file_id, scheduled_at)
        )

    async def is_file_deletion_stuck(self, file_id: int) -> bool:
        return await self._transaction(
            lambda session: self.file_deletion.is_file_deletion_stuck(session, file_id)
        )

    async def kickoff_account_anonymization(
        self, account_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.anonymization.kickoff(session, account_id, scheduled_at)
        )

    async def is_account_anonymization_stuck(self, account_id: int) -> bool:
        return await self._transaction(
            lambda session: self.anonymization.is_account_anonymization_stuck(
                session, account_id
            )
        )

    async def kickoff_account_deletion(
        self, account_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.account_deletion.kickoff(session, account_id, scheduled_at)
        )

    async def request_account_deletion(
        self, account_id: Optional[int], authenticated_account_id: Optional[int]
    ) -> dict[str, Any]:
        return await self._transaction(
            lambda session: self.account_deletion.request_account_deletion(
                session, account_id, authenticated_account_id
            )
        )

    # ------------------------------------------------------------------
    # Transcription
    # ------------------------------------------------------------------

    async def kickoff_recording_transcription(
        self, recording_id: Optional[int], scheduled_at: Optional[datetime] = None
    ) -> Optional[str]:
        return await self._transaction(
            lambda session: self.transcription.kickoff(session, recording_id, scheduled_at)
        )

    async def request_recording_transcription(
        self, recording_id: Optional[int], authenticated_account_id: Optional[int]
    ) -> dict[str, Any]:
        return await self._transaction(
            lambda session: self.transcription.request_recording_transcription(
                session, recording_id, authenticated_account_id
            )
        )

    async def record_transcription_webhook(
        self, raw_body: str, signature_header: Optional[str]
    ) -> dict[str, Any]:
        """Webhook endpoint body: store first, verify later."""
        return await self._transaction(
            lambda session: record_transcription_webhook(session, raw_body, signature_header)
        )
