"""Typed error types for PostgresTaskQueue operations.

Result propagation policy
-------------------------
* **Queue layer** returns ``QueueResult``. It never raises for operational
  failures (only ``asyncio.CancelledError`` passes through). Absence is a
  value too: no available task is ``Ok(None)``, a repeated completion is
  ``Ok(False)``.

* **Worker loop** handles ``QueueResult`` with real decisions: back off and
  retry on ``retryable`` errors, give up and stop otherwise.

* **Process boundaries** (CLI startup) convert ``Err`` to an exception and
  exit, since nothing can run without a schema.

* **Supervisors and handlers** do not use this type. They run inside a
  session owned by the function runner and enqueue through
  ``chatterbox.core.queue.ops`` so their writes commit atomically.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from chatterbox.core.types.result import Result


class QueueErrorCode(str, Enum):
    """Categorized queue operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    ENQUEUE_FAILED = 'ENQUEUE_FAILED'
    DEQUEUE_FAILED = 'DEQUEUE_FAILED'
    COMPLETE_FAILED = 'COMPLETE_FAILED'
    FAIL_FAILED = 'FAIL_FAILED'
    TASK_INFO_FAILED = 'TASK_INFO_FAILED'
    CLOSE_FAILED = 'CLOSE_FAILED'


@dataclass(slots=True, frozen=True)
class QueueOperationError:
    """Error payload carried inside Err(...) for queue operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: QueueErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


T = TypeVar('T')

QueueResult = Result[T, QueueOperationError]
