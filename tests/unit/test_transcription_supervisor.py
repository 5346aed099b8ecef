"""Unit tests for the transcription poll state machine (database mocked)."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatterbox.core.models.app import TranscriptionPolicy
from chatterbox.core.supervisor.facts import SupervisorFacts
from chatterbox.core.supervisor.state import TranscriptionSupervisorState
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.status import SupervisorStatus
from chatterbox.core.workflows.signature import compute_signature
from chatterbox.core.workflows.transcription import (
    RecordingTranscriptionSupervisor,
    record_transcription_webhook,
)

NOW = datetime(2025, 7, 10, 12, 0, 0, tzinfo=timezone.utc)
SECRET = 'whsec_test_secret'
TASK = SimpleNamespace(id=3, recording_id=8)


def _state(**values: Any) -> TranscriptionSupervisorState:
    return TranscriptionSupervisorState(
        handler=HandlerId.RECORDING_TRANSCRIPTION_SUPERVISOR, task_id=3, **values
    )


def _scheduled_state(supervisor: RecordingTranscriptionSupervisor) -> TranscriptionSupervisorState:
    return supervisor.schedule_next_run.await_args.args[1]


@pytest.fixture
def supervisor() -> Iterator[RecordingTranscriptionSupervisor]:
    policy = TranscriptionPolicy(
        webhook_secret=SECRET,
        recheck_interval_seconds=3,
        max_wait_seconds=9,
        kickoff_timeout_seconds=6,
    )
    sup = RecordingTranscriptionSupervisor(policy, clock=lambda: NOW)
    outstanding = SupervisorFacts(has_succeeded=False, num_failures=0, num_attempts=1)
    with (
        patch.object(sup, 'load_facts', AsyncMock(return_value=outstanding)),
        patch.object(sup, 'latest_open_attempt_id', AsyncMock(return_value=21)),
        patch.object(sup, 'attempt_has_response', AsyncMock(return_value=False)),
        patch.object(sup, 'attempt_has_request', AsyncMock(return_value=False)),
        patch.object(sup, 'record_attempt_failure', AsyncMock()),
        patch.object(sup, 'record_attempt_success', AsyncMock()),
        patch.object(sup, 'schedule_next_run', AsyncMock(return_value=600)),
    ):
        yield sup


@pytest.mark.unit
class TestPolling:
    @pytest.mark.asyncio
    async def test_start_attempt_resets_timers(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        supervisor.load_facts.return_value = SupervisorFacts(
            has_succeeded=False, num_failures=1, num_attempts=1
        )
        with patch.object(supervisor, 'start_attempt', AsyncMock(return_value=22)):
            status = await supervisor.supervise(
                MagicMock(), TASK, _state(current_attempt_id=21, time_waiting_seconds=9)
            )
        assert status is SupervisorStatus.KICKOFF_SCHEDULED
        following = _scheduled_state(supervisor)
        assert following.current_attempt_id == 22
        assert following.time_waiting_seconds == 0
        assert supervisor.schedule_next_run.await_args.args[2] == NOW + timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_kickoff_in_progress_accumulates_wait(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        status = await supervisor.supervise(MagicMock(), TASK, _state(current_attempt_id=21))
        assert status is SupervisorStatus.KICKOFF_IN_PROGRESS
        assert _scheduled_state(supervisor).kickoff_wait_seconds == 3

    @pytest.mark.asyncio
    async def test_kickoff_timeout_fails_attempt(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        status = await supervisor.supervise(
            session, TASK, _state(current_attempt_id=21, kickoff_wait_seconds=6)
        )
        assert status is SupervisorStatus.KICKOFF_TIMEOUT
        supervisor.record_attempt_failure.assert_awaited_once_with(session, 21, 'kickoff_timeout')
        assert _scheduled_state(supervisor).current_attempt_id is None

    @pytest.mark.asyncio
    async def test_waiting_for_webhook_accumulates_wait(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        supervisor.attempt_has_request.return_value = True
        status = await supervisor.supervise(
            MagicMock(), TASK, _state(current_attempt_id=21, time_waiting_seconds=3)
        )
        assert status is SupervisorStatus.WAITING_FOR_WEBHOOK
        assert _scheduled_state(supervisor).time_waiting_seconds == 6

    @pytest.mark.asyncio
    async def test_webhook_timeout_fails_attempt(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        supervisor.attempt_has_request.return_value = True
        status = await supervisor.supervise(
            session, TASK, _state(current_attempt_id=21, time_waiting_seconds=9)
        )
        assert status is SupervisorStatus.WEBHOOK_TIMEOUT
        supervisor.record_attempt_failure.assert_awaited_once_with(session, 21, 'webhook_timeout')
        following = _scheduled_state(supervisor)
        assert following.time_waiting_seconds == 0
        assert following.current_attempt_id is None

    @pytest.mark.asyncio
    async def test_timers_reset_when_attempt_changes(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        """Wait counted for attempt 20 must not time out attempt 21."""
        supervisor.attempt_has_request.return_value = True
        status = await supervisor.supervise(
            MagicMock(), TASK, _state(current_attempt_id=20, time_waiting_seconds=9)
        )
        assert status is SupervisorStatus.WAITING_FOR_WEBHOOK
        following = _scheduled_state(supervisor)
        assert following.current_attempt_id == 21
        assert following.time_waiting_seconds == 3

    @pytest.mark.asyncio
    async def test_response_is_processed(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        supervisor.attempt_has_response.return_value = True
        process = AsyncMock(return_value={'status': 'succeeded'})
        with patch.object(supervisor, 'process_transcription_response', process):
            status = await supervisor.supervise(MagicMock(), TASK, _state(current_attempt_id=21))
        assert status is SupervisorStatus.RESPONSE_PROCESSED
        process.assert_awaited_once()


def _response(body: str, header: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        raw_body=body,
        signature_header=header,
        received_at=datetime.fromtimestamp(1752155502 + 10, tz=timezone.utc),
    )


@pytest.mark.unit
class TestProcessResponse:
    BODY = json.dumps(
        {
            'type': 'speech_to_text_transcription',
            'data': {
                'request_id': 'req-1',
                'transcription': {
                    'text': 'hello',
                    'words': [],
                    'language_code': 'en',
                    'language_probability': 0.98,
                },
            },
        }
    )

    def _signed(self, body: str) -> str:
        return f't=1752155502,{compute_signature(SECRET, 1752155502, body)}'

    @pytest.mark.asyncio
    async def test_invalid_signature_fails_attempt(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        response = _response(self.BODY, 't=1752155502,v0=deadbeef')
        with patch.object(supervisor, 'response_for_attempt', AsyncMock(return_value=response)):
            result = await supervisor.process_transcription_response(session, 21)
        assert result == {'status': 'failed', 'reason': 'invalid_signature'}
        supervisor.record_attempt_failure.assert_awaited_once_with(
            session, 21, 'invalid_signature'
        )

    @pytest.mark.asyncio
    async def test_missing_secret_fails_attempt(self) -> None:
        sup = RecordingTranscriptionSupervisor(TranscriptionPolicy(), clock=lambda: NOW)
        response = _response(self.BODY, self._signed(self.BODY))
        with (
            patch.object(sup, 'response_for_attempt', AsyncMock(return_value=response)),
            patch.object(sup, 'record_attempt_failure', AsyncMock()) as failure,
        ):
            result = await sup.process_transcription_response(MagicMock(), 21)
        assert result['reason'] == 'missing_webhook_secret'
        failure.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_transcription_data(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        body = json.dumps({'data': {'request_id': 'req-1'}})
        response = _response(body, self._signed(body))
        with patch.object(supervisor, 'response_for_attempt', AsyncMock(return_value=response)):
            result = await supervisor.process_transcription_response(MagicMock(), 21)
        assert result['reason'] == 'missing_transcription_data'

    @pytest.mark.asyncio
    async def test_valid_response_stores_transcript(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        inserted = MagicMock()
        inserted.scalar_one_or_none.return_value = 1
        session.execute = AsyncMock(return_value=inserted)
        response = _response(self.BODY, self._signed(self.BODY))
        with (
            patch.object(supervisor, 'response_for_attempt', AsyncMock(return_value=response)),
            patch.object(supervisor, 'recording_id_for_attempt', AsyncMock(return_value=8)),
        ):
            result = await supervisor.process_transcription_response(session, 21)
        assert result == {'status': 'succeeded'}
        session.execute.assert_awaited_once()
        supervisor.record_attempt_success.assert_awaited_once_with(session, 21)
        supervisor.record_attempt_failure.assert_not_awaited()


@pytest.mark.unit
class TestRequestFacts:
    PAYLOAD = {'original_payload': {'attempt_id': 21}, 'worker_payload': {'request_id': 'req-1'}}

    @pytest.mark.asyncio
    async def test_request_after_timeout_is_rejected(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        session.execute = AsyncMock()
        with (
            patch.object(supervisor, '_lock_task_of_attempt', AsyncMock(return_value=3)),
            patch.object(supervisor, '_exists', AsyncMock(return_value=True)),
        ):
            result = await supervisor.record_request_success(session, self.PAYLOAD)
        assert result == {'status': 'conflicting'}
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_request_for_open_attempt_is_recorded(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        session = MagicMock()
        inserted = MagicMock()
        inserted.scalar_one_or_none.return_value = 1
        session.execute = AsyncMock(return_value=inserted)
        with (
            patch.object(supervisor, '_lock_task_of_attempt', AsyncMock(return_value=3)),
            patch.object(supervisor, '_exists', AsyncMock(return_value=False)),
        ):
            result = await supervisor.record_request_success(session, self.PAYLOAD)
        assert result == {'status': 'recorded'}
        session.execute.assert_awaited_once()


@pytest.mark.unit
class TestWebhookIntakeParsing:
    @pytest.mark.asyncio
    async def test_deeply_nested_body_is_reported_malformed(self) -> None:
        session = MagicMock()
        session.execute = AsyncMock()
        result = await record_transcription_webhook(session, '[' * 100_000, None)
        assert result == {'status': 'received', 'warning': 'malformed_body'}
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deeply_nested_stored_response_fails_attempt(
        self, supervisor: RecordingTranscriptionSupervisor
    ) -> None:
        body = '[' * 100_000
        response = _response(body, f't=1752155502,{compute_signature(SECRET, 1752155502, body)}')
        with patch.object(supervisor, 'response_for_attempt', AsyncMock(return_value=response)):
            result = await supervisor.process_transcription_response(MagicMock(), 21)
        assert result == {'status': 'failed', 'reason': 'malformed_payload'}
