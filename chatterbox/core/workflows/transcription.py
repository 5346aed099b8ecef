# chatterbox/core/workflows/transcription.py
"""
Recording transcription, completed by webhook.

Each attempt goes through two stages:

1. a queued `transcription_kickoff` task calls the provider; its success
   handler stores a Request row with the provider's request id
2. the provider calls back; the webhook endpoint stores the raw body and
   signature header as a Response row without verifying anything

The supervisor polls at a fixed interval and moves the attempt along:

    no request   -> kickoff_in_progress (kickoff_timeout after the limit)
    request      -> waiting_for_webhook (webhook_timeout after max_wait)
    response     -> verify, store transcript, record the attempt outcome

Elapsed wait is carried in the supervisor state, not in the database.
"""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.defaults import MISSING_SIGNATURE_HEADER
from chatterbox.core.logging import get_logger
from chatterbox.core.models.app import TranscriptionPolicy
from chatterbox.core.models.workflow_pg import (
    FileModel,
    RecordingModel,
    RecordingTranscriptionAttemptFailedModel,
    RecordingTranscriptionAttemptModel,
    RecordingTranscriptionAttemptSucceededModel,
    RecordingTranscriptionTaskModel,
    RecordingTranscriptModel,
    TranscriptionRequestModel,
    TranscriptionResponseModel,
)
from chatterbox.core.supervisor.backoff import fixed_interval_check_at
from chatterbox.core.supervisor.base import (
    FactTables,
    RetryingSupervisor,
    attempt_id_from,
    provider_task_payload,
)
from chatterbox.core.supervisor.facts import SupervisorDecision, decide
from chatterbox.core.supervisor.state import TranscriptionSupervisorState
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.status import FactOutcome, SupervisorStatus, TaskType
from chatterbox.core.workflows.responses import error_payload
from chatterbox.core.workflows.signature import signature_is_valid

REQUEST_FAILED = 'Request Recording Transcription Failed'

webhook_logger = get_logger('transcription_webhook')


def _data_section(document: Any) -> dict[str, Any]:
    if isinstance(document, dict):
        data = document.get('data')
        if isinstance(data, dict):
            return data
    return {}


# ---------------------------------------------------------------------------
# Webhook ingestion
# ---------------------------------------------------------------------------


async def record_transcription_webhook(
    session: AsyncSession,
    raw_body: str,
    signature_header: Optional[str],
) -> dict[str, Any]:
    """
    Store a provider callback for later verification.

    Always reports `received`; anything that cannot be correlated comes
    back with a `warning` and is dropped.
    """
    try:
        document = json.loads(raw_body)
    except (ValueError, RecursionError):
        webhook_logger.warning('Transcription webhook with malformed body')
        return {'status': 'received', 'warning': 'malformed_body'}

    provider_request_id = _data_section(document).get('request_id')
    if not isinstance(provider_request_id, str) or not provider_request_id:
        webhook_logger.warning('Transcription webhook without request_id')
        return {'status': 'received', 'warning': 'missing_request_id'}

    request_id = (
        await session.execute(
            select(TranscriptionRequestModel.id).where(
                TranscriptionRequestModel.provider_request_id == provider_request_id
            )
        )
    ).scalar_one_or_none()
    if request_id is None:
        webhook_logger.warning(f'Transcription webhook for unknown request {provider_request_id}')
        return {'status': 'received', 'warning': 'request_not_found'}

    inserted = await session.execute(
        pg_insert(TranscriptionResponseModel)
        .values(
            request_id=request_id,
            raw_body=raw_body,
            signature_header=signature_header or MISSING_SIGNATURE_HEADER,
        )
        .on_conflict_do_nothing(index_elements=['request_id'])
        .returning(TranscriptionResponseModel.id)
    )
    if inserted.scalar_one_or_none() is None:
        webhook_logger.warning(f'Duplicate transcription webhook for request {provider_request_id}')
        return {'status': 'received', 'warning': 'response_already_exists'}

    return {'status': 'received'}


async def has_recording_transcript(session: AsyncSession, recording_id: int) -> bool:
    result = await session.execute(
        select(
            select(RecordingTranscriptModel.id)
            .where(RecordingTranscriptModel.recording_id == recording_id)
            .exists()
        )
    )
    return bool(result.scalar())


def _probability(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class RecordingTranscriptionSupervisor(RetryingSupervisor):
    name = 'recording_transcription'
    handler = HandlerId.RECORDING_TRANSCRIPTION_SUPERVISOR
    tables = FactTables(
        task=RecordingTranscriptionTaskModel,
        attempt=RecordingTranscriptionAttemptModel,
        succeeded=RecordingTranscriptionAttemptSucceededModel,
        failed=RecordingTranscriptionAttemptFailedModel,
        key='recording_id',
    )
    state_model = TranscriptionSupervisorState

    policy: TranscriptionPolicy

    async def is_done(
        self, session: AsyncSession, task: RecordingTranscriptionTaskModel
    ) -> bool:
        return await has_recording_transcript(session, task.recording_id)

    def build_attempt_task(
        self, task: RecordingTranscriptionTaskModel, attempt_id: int
    ) -> tuple[TaskType, dict[str, Any]]:
        return TaskType.TRANSCRIPTION_KICKOFF, provider_task_payload(
            TaskType.TRANSCRIPTION_KICKOFF,
            attempt_id,
            before=HandlerId.GET_TRANSCRIPTION_KICKOFF_PAYLOAD,
            success=HandlerId.RECORD_TRANSCRIPTION_REQUEST_SUCCESS,
            error=HandlerId.RECORD_TRANSCRIPTION_REQUEST_FAILURE,
        )

    async def schedule_poll(
        self,
        session: AsyncSession,
        state: TranscriptionSupervisorState,
        **changes: Any,
    ) -> int:
        at = fixed_interval_check_at(self.clock(), self.policy.recheck_interval_seconds)
        return await self.schedule_next_run(session, state.next_run(**changes), at)

    async def schedule_fresh_poll(
        self, session: AsyncSession, state: TranscriptionSupervisorState
    ) -> int:
        """Next run starts without an attempt in view and with both timers reset."""
        return await self.schedule_poll(
            session,
            state,
            current_attempt_id=None,
            kickoff_wait_seconds=0,
            time_waiting_seconds=0,
        )

    async def supervise(
        self,
        session: AsyncSession,
        task: RecordingTranscriptionTaskModel,
        state: TranscriptionSupervisorState,
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
                    f'{self.name} task {task.id}: kickoff for attempt {attempt_id} '
                    f'({facts.num_failures} failures so far)'
                )
                await self.schedule_poll(
                    session,
                    state,
                    current_attempt_id=attempt_id,
                    kickoff_wait_seconds=0,
                    time_waiting_seconds=0,
                )
                return SupervisorStatus.KICKOFF_SCHEDULED
            case SupervisorDecision.RECHECK:
                return await self.observe_attempt(session, task, state)

    async def observe_attempt(
        self,
        session: AsyncSession,
        task: RecordingTranscriptionTaskModel,
        state: TranscriptionSupervisorState,
    ) -> SupervisorStatus:
        attempt_id = await self.latest_open_attempt_id(session, task.id)
        if attempt_id is None:
            await self.schedule_fresh_poll(session, state)
            return SupervisorStatus.KICKOFF_IN_PROGRESS

        if state.current_attempt_id != attempt_id:
            # Timers belong to the attempt they were started for.
            state = state.model_copy(
                update={
                    'current_attempt_id': attempt_id,
                    'kickoff_wait_seconds': 0,
                    'time_waiting_seconds': 0,
                }
            )

        interval = self.policy.recheck_interval_seconds

        if await self.attempt_has_response(session, attempt_id):
            await self.process_transcription_response(session, attempt_id)
            await self.schedule_fresh_poll(session, state)
            return SupervisorStatus.RESPONSE_PROCESSED

        if await self.attempt_has_request(session, attempt_id):
            if state.time_waiting_seconds >= self.policy.max_wait_seconds:
                await self.record_attempt_failure(session, attempt_id, 'webhook_timeout')
                await self.schedule_fresh_poll(session, state)
                return SupervisorStatus.WEBHOOK_TIMEOUT
            await self.schedule_poll(
                session, state, time_waiting_seconds=state.time_waiting_seconds + interval
            )
            return SupervisorStatus.WAITING_FOR_WEBHOOK

        if state.kickoff_wait_seconds >= self.policy.kickoff_timeout_seconds:
            await self.record_attempt_failure(session, attempt_id, 'kickoff_timeout')
            await self.schedule_fresh_poll(session, state)
            return SupervisorStatus.KICKOFF_TIMEOUT

        await self.schedule_poll(
            session, state, kickoff_wait_seconds=state.kickoff_wait_seconds + interval
        )
        return SupervisorStatus.KICKOFF_IN_PROGRESS

    # ------------------------------------------------------------------
    # Attempt facts
    # ------------------------------------------------------------------

    async def attempt_has_request(self, session: AsyncSession, attempt_id: int) -> bool:
        return await self._exists(
            session,
            select(TranscriptionRequestModel.id).where(
                TranscriptionRequestModel.attempt_id == attempt_id
            ),
        )

    async def attempt_has_response(self, session: AsyncSession, attempt_id: int) -> bool:
        return await self._exists(
            session,
            select(TranscriptionResponseModel.id)
            .join(
                TranscriptionRequestModel,
                TranscriptionRequestModel.id == TranscriptionResponseModel.request_id,
            )
            .where(TranscriptionRequestModel.attempt_id == attempt_id),
        )

    async def response_for_attempt(
        self, session: AsyncSession, attempt_id: int
    ) -> Optional[TranscriptionResponseModel]:
        result = await session.execute(
            select(TranscriptionResponseModel)
            .join(
                TranscriptionRequestModel,
                TranscriptionRequestModel.id == TranscriptionResponseModel.request_id,
            )
            .where(TranscriptionRequestModel.attempt_id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def recording_id_for_attempt(
        self, session: AsyncSession, attempt_id: int
    ) -> Optional[int]:
        T, A = self.tables.task, self.tables.attempt
        result = await session.execute(
            select(T.recording_id).join(A, A.task_id == T.id).where(A.id == attempt_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Response processing
    # ------------------------------------------------------------------

    async def _reject_response(
        self, session: AsyncSession, attempt_id: int, reason: str
    ) -> dict[str, Any]:
        await self.record_attempt_failure(session, attempt_id, reason)
        self.logger.warning(f'{self.name} attempt {attempt_id}: response rejected: {reason}')
        return {'status': 'failed', 'reason': reason}

    async def process_transcription_response(
        self, session: AsyncSession, attempt_id: int
    ) -> dict[str, Any]:
        """Verify the stored callback of an attempt and store its transcript."""
        response = await self.response_for_attempt(session, attempt_id)
        if response is None:
            return {'status': 'failed', 'reason': 'response_not_found'}

        secret = self.policy.webhook_secret
        if secret is None or not secret.get_secret_value():
            return await self._reject_response(session, attempt_id, 'missing_webhook_secret')

        if not signature_is_valid(
            response.raw_body,
            response.signature_header,
            secret.get_secret_value(),
            int(response.received_at.timestamp()),
            self.policy.signature_tolerance_seconds,
        ):
            return await self._reject_response(session, attempt_id, 'invalid_signature')

        try:
            document = json.loads(response.raw_body)
        except (ValueError, RecursionError):
            return await self._reject_response(session, attempt_id, 'malformed_payload')

        transcription = _data_section(document).get('transcription')
        if not isinstance(transcription, dict):
            return await self._reject_response(session, attempt_id, 'missing_transcription_data')

        recording_id = await self.recording_id_for_attempt(session, attempt_id)
        if recording_id is None:
            return {'status': 'failed', 'reason': 'attempt_not_found'}

        text = transcription.get('text')
        language_code = transcription.get('language_code')
        inserted = await session.execute(
            pg_insert(RecordingTranscriptModel)
            .values(
                recording_id=recording_id,
                text=text if isinstance(text, str) else '',
                words=transcription.get('words') or [],
                language_code=language_code if isinstance(language_code, str) else None,
                language_probability=_probability(transcription.get('language_probability')),
            )
            .on_conflict_do_nothing(index_elements=['recording_id'])
            .returning(RecordingTranscriptModel.id)
        )
        await self.record_attempt_success(session, attempt_id)

        if inserted.scalar_one_or_none() is None:
            self.logger.warning(f'Transcript for recording {recording_id} already exists')
            return {'status': 'succeeded', 'warning': 'transcript_already_exists'}
        self.logger.info(f'Stored transcript for recording {recording_id}')
        return {'status': 'succeeded'}

    # ------------------------------------------------------------------
    # Handlers for the kickoff task
    # ------------------------------------------------------------------

    async def get_kickoff_payload(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        T, A = self.tables.task, self.tables.attempt
        row = (
            await session.execute(
                select(RecordingModel.id, FileModel.id, FileModel.bucket, FileModel.object_key)
                .join(FileModel, FileModel.id == RecordingModel.file_id)
                .join(T, T.recording_id == RecordingModel.id)
                .join(A, A.task_id == T.id)
                .where(A.id == attempt_id)
            )
        ).one_or_none()
        if row is None:
            return {'status': 'recording_not_found'}
        recording_id, file_id, bucket, object_key = row
        return {
            'status': 'succeeded',
            'payload': {
                'attempt_id': attempt_id,
                'recording_id': recording_id,
                'file_id': file_id,
                'bucket': bucket,
                'object_key': object_key,
            },
        }

    async def record_request_success(
        self, session: AsyncSession, payload: dict[str, Any]
    ) -> dict[str, Any]:
        """Stage 1 done: the provider accepted the call and gave us its request id."""
        attempt_id = attempt_id_from(payload)
        if attempt_id is None:
            return {'status': 'missing_attempt_id'}
        worker_payload = payload.get('worker_payload')
        provider_request_id = (
            worker_payload.get('request_id') if isinstance(worker_payload, dict) else None
        )
        if not isinstance(provider_request_id, str) or not provider_request_id:
            return {'status': 'missing_request_id'}

        if await self._lock_task_of_attempt(session, attempt_id) is None:
            return {'status': FactOutcome.ATTEMPT_NOT_FOUND.value}
        F = self.tables.failed
        if await self._exists(session, select(F.attempt_id).where(F.attempt_id == attempt_id)):
            # Too late: the attempt already timed out.
            return {'status': FactOutcome.CONFLICTING.value}

        inserted = await session.execute(
            pg_insert(TranscriptionRequestModel)
            .values(attempt_id=attempt_id, provider_request_id=provider_request_id)
            .on_conflict_do_nothing()
            .returning(TranscriptionRequestModel.id)
        )
        if inserted.scalar_one_or_none() is None:
            return {'status': FactOutcome.DUPLICATE.value}
        return {'status': FactOutcome.RECORDED.value}

    # ------------------------------------------------------------------
    # Kickoff
    # ------------------------------------------------------------------

    async def validate_kickoff(
        self, session: AsyncSession, key: Optional[int]
    ) -> Optional[str]:
        if key is None:
            return 'missing_recording_id'
        found = await session.execute(
            select(RecordingModel.id)
            .where(RecordingModel.id == key)
            .with_for_update(key_share=True)
        )
        if found.scalar_one_or_none() is None:
            return 'recording_not_found'
        return None

    async def request_recording_transcription(
        self,
        session: AsyncSession,
        recording_id: Optional[int],
        authenticated_account_id: Optional[int],
    ) -> dict[str, Any]:
        """User-facing entry point: transcribe one of the caller's recordings."""
        if authenticated_account_id is None:
            return error_payload(REQUEST_FAILED, 'Unauthorized', 'unauthorized')
        if recording_id is None:
            return error_payload(REQUEST_FAILED, 'Invalid Request Payload', 'missing_recording_id')

        owned = await session.execute(
            select(RecordingModel.id)
            .where(
                RecordingModel.id == recording_id,
                RecordingModel.account_id == authenticated_account_id,
            )
            .with_for_update(key_share=True)
        )
        if owned.scalar_one_or_none() is None:
            return error_payload(REQUEST_FAILED, 'Recording not found', 'recording_not_found')

        if await has_recording_transcript(session, recording_id):
            return {'status': 'already_transcribed'}
        if await self.is_in_progress(session, recording_id):
            return {'status': 'in_progress'}

        task_id = await self.create_task(session, recording_id, created_by=authenticated_account_id)
        return {'status': 'started', 'task_id': task_id}
