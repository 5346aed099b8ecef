# chatterbox/core/worker/worker.py
from __future__ import annotations

import asyncio
import time
from typing import NoReturn, Optional

from pydantic import ValidationError

from chatterbox.core.errors import ChatterboxError, ErrorCode, InvariantViolation
from chatterbox.core.logging import get_logger, task_context
from chatterbox.core.models.resilience import WorkerResilienceConfig
from chatterbox.core.models.tasks import (
    BeforeHandlerResult,
    QueuedTask,
    error_handler_payload,
    success_handler_payload,
)
from chatterbox.core.queue import PostgresTaskQueue, QueueOperationError
from chatterbox.core.registry.runner import FunctionRunner, InvalidHandlerResult
from chatterbox.core.types.result import is_err
from chatterbox.core.types.status import TaskType
from chatterbox.core.utils.db import is_retryable_connection_error
from chatterbox.core.worker.config import WorkerConfig
from chatterbox.core.worker.providers import ProviderSet

logger = get_logger('worker')


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f'{type(exc).__name__}: {text}' if text else type(exc).__name__


class Worker:
    """
    Async polling worker:
      - runs `concurrency` loops, each claiming one task at a time
      - dispatches by task type (db_function handler, or provider side effect)
      - completes every handled task; unexpected errors are logged as task
        errors and the task is retried once its lease expires
    """

    def __init__(
        self,
        queue: PostgresTaskQueue,
        runner: FunctionRunner,
        providers: ProviderSet,
        cfg: WorkerConfig,
        resilience: Optional[WorkerResilienceConfig] = None,
    ):
        self.queue = queue
        self.runner = runner
        self.providers = providers
        self.cfg = cfg
        self._resilience = cfg.resilience_config or resilience or WorkerResilienceConfig()
        self._stop = asyncio.Event()
        self._last_activity = time.monotonic()

    def request_stop(self) -> None:
        """Request worker to stop gracefully."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _sleep_with_stop(self, delay_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
        except asyncio.TimeoutError:
            return

    def _idle_expired(self) -> bool:
        if self.cfg.max_idle_seconds is None:
            return False
        return time.monotonic() - self._last_activity >= self.cfg.max_idle_seconds

    # ----- lifecycle -----

    async def run_forever(self) -> None:
        """Run the polling loops until stopped, idle for too long, or a fatal error."""
        logger.info(
            f'Worker started (concurrency={self.cfg.concurrency}, '
            f'poll_interval={self.cfg.poll_interval_seconds}s)'
        )
        self._last_activity = time.monotonic()
        loops = [
            asyncio.create_task(self._poll_loop(slot), name=f'chatterbox-poll-{slot}')
            for slot in range(self.cfg.concurrency)
        ]
        try:
            await asyncio.gather(*loops)
        finally:
            self._stop.set()
            for loop in loops:
                loop.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            logger.info('Worker stopped')

    async def _poll_loop(self, slot: int) -> None:
        backoff = self._resilience.new_backoff()
        while not self._stop.is_set():
            try:
                claimed = await self.run_once()
                backoff.reset()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if is_retryable_connection_error(exc):
                    if not backoff.can_retry():
                        logger.error(
                            f'Poll loop {slot} failed after {backoff.attempts} attempts: {exc}'
                        )
                        raise
                    delay = backoff.next_delay_seconds()
                    logger.error(
                        f'Poll loop {slot} error: {exc}. Retrying in {delay:.1f}s '
                        f'(attempt {backoff.attempts}/{backoff.max_attempts or "inf"})'
                    )
                    await self._sleep_with_stop(delay)
                    continue
                raise

            if claimed:
                continue
            if self._idle_expired():
                logger.info(f'No work for {self.cfg.max_idle_seconds}s, stopping')
                self.request_stop()
                return
            await self._sleep_with_stop(self.cfg.poll_interval_seconds)

    async def run_once(self) -> bool:
        """Claim and process at most one task. Returns whether a task was claimed."""
        claimed = await self.queue.dequeue_next_available_task()
        if is_err(claimed):
            self._raise_queue_error(claimed.err_value)
        task = claimed.ok_value
        if task is None:
            return False

        self._last_activity = time.monotonic()
        await self.process_task(task)
        return True

    @staticmethod
    def _raise_queue_error(error: QueueOperationError) -> NoReturn:
        if error.exception is not None:
            raise error.exception
        raise RuntimeError(error.message)

    # ----- processing -----

    async def process_task(self, task: QueuedTask) -> None:
        label = task.handler_name('handler') or task.task_type.value
        with task_context(task.id, label):
            await self._process(task)

    async def _process(self, task: QueuedTask) -> None:
        try:
            await self.dispatch(task)
        except ChatterboxError as exc:
            # Retrying cannot help; record it and retire the task.
            logger.error(f'Task {task.id} ({task.task_type.value}) rejected: {exc.message}')
            await self._fail(task.id, f'{type(exc).__name__}: {exc.message}')
            await self._complete(task.id)
            return
        except Exception as exc:
            logger.error(
                f'Task {task.id} ({task.task_type.value}) failed: {_describe(exc)}; '
                f'it becomes available again at {task.lease_expires_at.isoformat()}'
            )
            await self._fail(task.id, _describe(exc))
            return
        await self._complete(task.id)

    async def dispatch(self, task: QueuedTask) -> None:
        match task.task_type:
            case TaskType.DB_FUNCTION:
                await self._run_db_function(task)
            case _:
                await self._run_provider_task(task)

    async def _run_db_function(self, task: QueuedTask) -> None:
        handler = task.handler_name('handler')
        if handler is None:
            raise self._invalid_payload(task, 'db_function task without a handler')
        success = task.handler_name('success_handler')
        error = task.handler_name('error_handler')

        if success is None and error is None:
            await self.runner.run_function(handler, task.payload)
            return

        try:
            result = await self.runner.run_function(handler, task.payload)
        except ChatterboxError:
            raise
        except Exception as exc:
            if error is None or is_retryable_connection_error(exc):
                raise
            await self.runner.run_function(
                error, error_handler_payload(task.payload, _describe(exc))
            )
            return

        if result.get('status') == 'succeeded':
            if success is not None:
                await self.runner.run_function(
                    success, success_handler_payload(task.payload, result)
                )
        elif error is not None:
            await self.runner.run_function(
                error, error_handler_payload(task.payload, str(result.get('status')))
            )

    async def _run_provider_task(self, task: QueuedTask) -> None:
        before = task.handler_name('before_handler')
        success = task.handler_name('success_handler')
        error = task.handler_name('error_handler')
        if before is None or success is None or error is None:
            raise self._invalid_payload(
                task, 'provider task needs before_handler, success_handler and error_handler'
            )

        document = await self.runner.run_function(before, task.payload)
        try:
            prepared = BeforeHandlerResult.model_validate(document)
        except ValidationError as exc:
            raise InvalidHandlerResult(
                before, document, f'a before-handler result ({exc.error_count()} errors)'
            ) from exc
        if not prepared.succeeded or prepared.payload is None:
            logger.warning(f'Task {task.id}: before handler reported {prepared.status}')
            await self.runner.run_function(
                error, error_handler_payload(task.payload, f'before_handler: {prepared.status}')
            )
            return

        provider = self.providers.for_task_type(task.task_type)
        try:
            worker_payload = await provider(prepared.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(f'Task {task.id} ({task.task_type.value}) provider error: {exc}')
            await self.runner.run_function(
                error, error_handler_payload(task.payload, _describe(exc))
            )
            return

        if not isinstance(worker_payload, dict):
            worker_payload = {'result': worker_payload}
        await self.runner.run_function(
            success, success_handler_payload(task.payload, worker_payload)
        )

    @staticmethod
    def _invalid_payload(task: QueuedTask, reason: str) -> InvariantViolation:
        return InvariantViolation(
            message=f'task {task.id}: {reason}',
            code=ErrorCode.TASK_INVALID_PAYLOAD,
            notes=[f'payload keys: {sorted(task.payload)}'],
        )

    async def _complete(self, task_id: int) -> None:
        completed = await self.queue.complete_task(task_id)
        if is_err(completed):
            logger.error(f'Could not complete task {task_id}: {completed.err_value.message}')

    async def _fail(self, task_id: int, message: str) -> None:
        failed = await self.queue.fail_task(task_id, message)
        if is_err(failed):
            logger.error(f'Could not log error for task {task_id}: {failed.err_value.message}')

