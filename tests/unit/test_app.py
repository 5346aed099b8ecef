"""Unit tests for the Chatterbox application object (no database)."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatterbox.core.app import Chatterbox
from chatterbox.core.errors import ConfigurationError, ErrorCode
from chatterbox.core.models.app import AppConfig, WorkflowsConfig, SupervisorPolicy
from chatterbox.core.models.broker import PostgresConfig
from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.worker.config import WorkerConfig
from chatterbox.core.worker.providers import ProviderSet
from chatterbox.core.worker.worker import Worker

pytestmark = pytest.mark.unit

DB_URL = 'postgresql+psycopg://u:p@localhost/db'


def _config(**overrides: Any) -> AppConfig:
    return AppConfig(broker=PostgresConfig(database_url=DB_URL), **overrides)


def _providers() -> ProviderSet:
    return ProviderSet(
        send_email=AsyncMock(),
        send_sms=AsyncMock(),
        delete_file=AsyncMock(),
        start_transcription=AsyncMock(),
    )


class TestWiring:
    def test_every_handler_id_is_registered(self) -> None:
        app = Chatterbox(_config())
        assert app.handlers.missing() == []
        assert len(app.handlers) == len(HandlerId)

    def test_supervisors_get_their_own_policy(self) -> None:
        email_policy = SupervisorPolicy(max_attempts=4, base_delay_seconds=1, max_runs=50)
        app = Chatterbox(_config(workflows=WorkflowsConfig(send_email=email_policy)))
        assert app.send_email.policy is email_policy
        assert app.send_sms.policy.max_attempts == 2

    def test_account_deletion_composes_children(self) -> None:
        app = Chatterbox(_config())
        assert app.account_deletion.file_deletion is app.file_deletion
        assert app.account_deletion.anonymization is app.anonymization

    def test_registry_points_at_supervisor_entry_points(self) -> None:
        app = Chatterbox(_config())
        assert app.handlers[HandlerId.FILE_DELETION_SUPERVISOR] == app.file_deletion.run
        assert app.handlers[HandlerId.ANONYMIZE_ACCOUNT] == app.anonymization.anonymize_account

    def test_queue_is_lazy(self) -> None:
        with patch('chatterbox.core.app.PostgresTaskQueue') as queue_cls:
            app = Chatterbox(_config(lease_seconds=120))
            queue_cls.assert_not_called()
            assert app.get_queue() is app.get_queue()
        queue_cls.assert_called_once()
        assert queue_cls.call_args.kwargs == {'lease_seconds': 120}


class TestWorkerFactory:
    def test_requires_providers(self) -> None:
        app = Chatterbox(_config())
        with pytest.raises(ConfigurationError) as exc_info:
            app.create_worker()
        assert exc_info.value.code is ErrorCode.CONFIG_INVALID_WORKER

    def test_builds_worker(self) -> None:
        with patch('chatterbox.core.app.PostgresTaskQueue'):
            app = Chatterbox(_config(), _providers())
            worker = app.create_worker(WorkerConfig(concurrency=3))
        assert isinstance(worker, Worker)
        assert worker.cfg.concurrency == 3


class TestEntryPoints:
    @pytest.mark.asyncio
    async def test_entry_point_runs_in_its_own_transaction(self) -> None:
        session = MagicMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=False)
        transaction = MagicMock()
        transaction.__aenter__ = AsyncMock(return_value=transaction)
        transaction.__aexit__ = AsyncMock(return_value=False)
        session.begin = MagicMock(return_value=transaction)
        queue = MagicMock()
        queue.session_factory = MagicMock(return_value=session)

        with patch('chatterbox.core.app.PostgresTaskQueue', return_value=queue):
            app = Chatterbox(_config())
            with patch.object(app.file_deletion, 'kickoff', AsyncMock(return_value=None)) as kickoff:
                assert await app.kickoff_file_deletion(9) is None

        kickoff.assert_awaited_once_with(session, 9, None)
        session.begin.assert_called_once()

    @pytest.mark.asyncio
    async def test_check_without_live_reports_nothing(self) -> None:
        app = Chatterbox(_config())
        assert await app.check() == []
