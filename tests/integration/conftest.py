"""Integration test fixtures: a real PostgreSQL database, fake providers."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy import insert, text
from sqlalchemy.ext.asyncio import AsyncSession

from chatterbox.core.app import Chatterbox
from chatterbox.core.models.app import AppConfig, WorkflowsConfig
from chatterbox.core.models.broker import PostgresConfig
from chatterbox.core.models.task_pg import Base
from chatterbox.core.models.workflow_pg import AccountModel, FileModel, RecordingModel
from chatterbox.core.types.result import is_err
from chatterbox.core.worker.config import WorkerConfig
from chatterbox.core.worker.providers import ProviderSet
from chatterbox.core.worker.worker import Worker

DATABASE_URL_ENV = 'CHATTERBOX_TEST_DATABASE_URL'

# Pull every future run forward so rechecks become claimable without sleeping.
RELEASE_SCHEDULED_SQL = text("""
    UPDATE chatterbox_tasks t
    SET scheduled_at = now()
    WHERE t.scheduled_at > now()
      AND NOT EXISTS (
          SELECT 1 FROM chatterbox_task_completions c WHERE c.task_id = t.id
      )
""")


@pytest.fixture(scope='session')
def database_url() -> str:
    url = os.environ.get(DATABASE_URL_ENV)
    if not url:
        pytest.skip(f'{DATABASE_URL_ENV} is not set')
    return url


# =============================================================================
# Providers
# =============================================================================


@dataclass
class FakeProviders:
    """Provider doubles that record their inputs and fail on demand."""

    calls: dict[str, list[dict[str, Any]]] = field(
        default_factory=lambda: {
            'send_email': [],
            'send_sms': [],
            'delete_file': [],
            'start_transcription': [],
        }
    )
    failing: set[str] = field(default_factory=set)

    async def _call(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls[name].append(payload)
        if name in self.failing:
            raise RuntimeError(f'{name} unavailable')
        return {'provider_message_id': f'{name}-{len(self.calls[name])}'}

    async def send_email(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call('send_email', payload)

    async def send_sms(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call('send_sms', payload)

    async def delete_file(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call('delete_file', payload)

    async def start_transcription(self, payload: dict[str, Any]) -> dict[str, Any]:
        await self._call('start_transcription', payload)
        count = len(self.calls['start_transcription'])
        return {'request_id': f'req-{payload["recording_id"]}-{count}'}

    def as_set(self) -> ProviderSet:
        return ProviderSet(
            send_email=self.send_email,
            send_sms=self.send_sms,
            delete_file=self.delete_file,
            start_transcription=self.start_transcription,
        )


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


# =============================================================================
# App and worker
# =============================================================================


@pytest.fixture
def workflows_config() -> WorkflowsConfig:
    """Override per module to inject test policies."""
    return WorkflowsConfig()


@pytest.fixture
def app_config(database_url: str, workflows_config: WorkflowsConfig) -> AppConfig:
    return AppConfig(
        broker=PostgresConfig(database_url=database_url, pool_size=5),
        workflows=workflows_config,
    )


async def truncate_all(app: Chatterbox) -> None:
    names = ', '.join(table.name for table in Base.metadata.sorted_tables)
    async with app.session_factory() as session, session.begin():
        await session.execute(text(f'TRUNCATE {names} RESTART IDENTITY CASCADE'))


@pytest_asyncio.fixture
async def app(
    app_config: AppConfig, providers: FakeProviders
) -> AsyncGenerator[Chatterbox, None]:
    """Chatterbox app with schema initialized and every table emptied."""
    chatterbox_app = Chatterbox(app_config, providers.as_set())
    initialized = await chatterbox_app.ensure_schema()
    if is_err(initialized):
        pytest.fail(f'schema init failed: {initialized.err_value.message}')
    await truncate_all(chatterbox_app)
    yield chatterbox_app
    await chatterbox_app.close()


@pytest.fixture
def worker(app: Chatterbox) -> Worker:
    return app.create_worker(WorkerConfig(concurrency=1, poll_interval_seconds=0.1))


@pytest_asyncio.fixture
async def session(app: Chatterbox) -> AsyncGenerator[AsyncSession, None]:
    """Session for direct queries; callers commit their own writes."""
    async with app.session_factory() as sess:
        yield sess


# =============================================================================
# Helpers
# =============================================================================


async def run_ready(worker: Worker, limit: int = 500) -> int:
    """Process every task that is claimable right now."""
    processed = 0
    while processed < limit and await worker.run_once():
        processed += 1
    return processed


async def drain(app: Chatterbox, worker: Worker, max_rounds: int = 200) -> int:
    """
    Run the queue to quiescence, treating every scheduled run as due.

    Stops once a round leaves no future run behind.
    """
    processed = 0
    for _ in range(max_rounds):
        processed += await run_ready(worker)
        async with app.session_factory() as session, session.begin():
            released = await session.execute(RELEASE_SCHEDULED_SQL)
        if released.rowcount == 0:
            return processed
    raise AssertionError(f'queue still busy after {max_rounds} rounds')


async def create_account(
    session: AsyncSession,
    email: Optional[str] = 'user@example.com',
    phone_number: Optional[str] = '+15550001111',
) -> int:
    result = await session.execute(
        insert(AccountModel)
        .values(email=email, phone_number=phone_number, hashed_password='hash')
        .returning(AccountModel.id)
    )
    account_id = int(result.scalar_one())
    await session.commit()
    return account_id


async def create_file(session: AsyncSession, object_key: str = 'audio/a.m4a') -> int:
    result = await session.execute(
        insert(FileModel)
        .values(bucket='recordings', object_key=object_key, mime_type='audio/mp4')
        .returning(FileModel.id)
    )
    file_id = int(result.scalar_one())
    await session.commit()
    return file_id


async def create_recording(
    session: AsyncSession, account_id: int, object_key: str = 'audio/a.m4a'
) -> int:
    file_id = await create_file(session, object_key)
    result = await session.execute(
        insert(RecordingModel)
        .values(account_id=account_id, file_id=file_id)
        .returning(RecordingModel.id)
    )
    recording_id = int(result.scalar_one())
    await session.commit()
    return recording_id


async def fetch_all(session: AsyncSession, sql: str, **params: Any) -> list[Any]:
    result = await session.execute(text(sql), params)
    rows = list(result.all())
    await session.commit()
    return rows
