# chatterbox/core/queue/postgres.py
from __future__ import annotations

import datetime
import hashlib
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from chatterbox.core.defaults import DEFAULT_LEASE_SECONDS
from chatterbox.core.logging import get_logger
from chatterbox.core.models import workflow_pg  # noqa: F401  (registers tables on Base)
from chatterbox.core.models.broker import PostgresConfig
from chatterbox.core.models.task_pg import Base
from chatterbox.core.models.tasks import QueuedTask, TaskInfo
from chatterbox.core.queue import ops
from chatterbox.core.queue.result_types import (
    QueueErrorCode,
    QueueOperationError,
    QueueResult,
)
from chatterbox.core.queue.sql import SCHEMA_ADVISORY_LOCK_SQL
from chatterbox.core.types.result import Err, Ok
from chatterbox.core.types.status import TaskType
from chatterbox.core.utils.db import describe_db_error, is_retryable_connection_error
from chatterbox.core.utils.url import mask_database_url


class PostgresTaskQueue:
    """
    PostgreSQL-backed lease queue.

    Every public method opens its own transaction and returns a QueueResult:
      - ensure_schema_initialized()
      - enqueue_async(task_type, payload, scheduled_at)
      - dequeue_next_available_task()
      - complete_task(task_id) / fail_task(task_id, message)
      - get_task_info_async(task_id)

    Code that must enqueue atomically with its own writes uses
    chatterbox.core.queue.ops with a session from `session_factory`.
    """

    def __init__(
        self,
        config: PostgresConfig,
        *,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.config = config
        self.lease_seconds = lease_seconds
        self.logger = get_logger('queue')

        engine_cfg = self.config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(self.config.database_url, **engine_cfg)
        self.session_factory = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        self.logger.info(
            f'PostgresTaskQueue initialized for {mask_database_url(config.database_url)}'
        )

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema initialization.

        Derived from the database URL so different clusters do not contend
        on the same key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'chatterbox-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    @staticmethod
    def _error(code: QueueErrorCode, action: str, exc: BaseException) -> QueueOperationError:
        return QueueOperationError(
            code=code,
            message=f'{action} failed: {describe_db_error(exc)}',
            retryable=is_retryable_connection_error(exc),
            exception=exc,
        )

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize DDL across workers and producers.
            await conn.execute(
                SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()}
            )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def ensure_schema_initialized(self) -> QueueResult[None]:
        """
        Create all tables if missing.

        Safe to call repeatedly and from many processes.
        """
        try:
            await self._ensure_initialized()
        except Exception as exc:
            self.logger.error(f'Schema initialization failed: {describe_db_error(exc)}')
            return Err(self._error(QueueErrorCode.SCHEMA_INIT_FAILED, 'schema init', exc))
        return Ok(None)

    # ----------------- Queue contract -----------------

    async def enqueue_async(
        self,
        task_type: TaskType,
        payload: dict[str, Any],
        scheduled_at: Optional[datetime.datetime] = None,
    ) -> QueueResult[int]:
        try:
            async with self.session_factory() as session, session.begin():
                task_id = await ops.enqueue(session, task_type, payload, scheduled_at)
        except Exception as exc:
            return Err(self._error(QueueErrorCode.ENQUEUE_FAILED, 'enqueue', exc))
        return Ok(task_id)

    async def dequeue_next_available_task(self) -> QueueResult[Optional[QueuedTask]]:
        """Claim one task under a fresh lease; Ok(None) when nothing is available."""
        try:
            async with self.session_factory() as session, session.begin():
                task = await ops.dequeue_next_available_task(session, self.lease_seconds)
        except Exception as exc:
            return Err(self._error(QueueErrorCode.DEQUEUE_FAILED, 'dequeue', exc))
        return Ok(task)

    async def complete_task(self, task_id: int) -> QueueResult[bool]:
        """Idempotent. Ok(False) means the task was already completed or is unknown."""
        try:
            async with self.session_factory() as session, session.begin():
                completed = await ops.complete_task(session, task_id)
        except Exception as exc:
            return Err(self._error(QueueErrorCode.COMPLETE_FAILED, 'complete', exc))
        return Ok(completed)

    async def fail_task(self, task_id: int, message: str) -> QueueResult[None]:
        """Log an error row for the task. Does not complete or re-queue it."""
        try:
            async with self.session_factory() as session, session.begin():
                await ops.fail_task(session, task_id, message)
        except Exception as exc:
            return Err(self._error(QueueErrorCode.FAIL_FAILED, 'fail', exc))
        return Ok(None)

    async def get_task_info_async(self, task_id: int) -> QueueResult[Optional[TaskInfo]]:
        try:
            async with self.session_factory() as session:
                info = await ops.get_task_info(session, task_id)
        except Exception as exc:
            return Err(self._error(QueueErrorCode.TASK_INFO_FAILED, 'task info', exc))
        return Ok(info)

    async def close_async(self) -> QueueResult[None]:
        try:
            await self.async_engine.dispose()
        except Exception as exc:
            return Err(self._error(QueueErrorCode.CLOSE_FAILED, 'close', exc))
        return Ok(None)
