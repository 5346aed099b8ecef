# chatterbox/core/models/tasks.py
from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from chatterbox.core.types.status import TaskType

# Status a before handler reports when the provider payload is ready.
SUCCEEDED_STATUS = 'succeeded'


@dataclass(frozen=True)
class QueuedTask:
    """A task handed out by dequeue, together with the lease it now holds."""

    id: int
    task_type: TaskType
    payload: dict[str, Any]
    enqueued_at: datetime.datetime
    scheduled_at: datetime.datetime
    lease_expires_at: datetime.datetime

    def handler_name(self, key: str) -> Optional[str]:
        """Read a handler id (e.g. `success_handler`) from the payload."""
        value = self.payload.get(key)
        return value if isinstance(value, str) else None


@dataclass
class TaskInfo:
    """Queue-level view of a task, derived from its lease/completion/error rows."""

    task_id: int
    task_type: TaskType
    payload: dict[str, Any]
    enqueued_at: datetime.datetime
    scheduled_at: datetime.datetime
    completed_at: datetime.datetime | None
    lease_count: int
    active_lease_expires_at: datetime.datetime | None
    errors: list[str]

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    @property
    def is_leased(self) -> bool:
        return self.active_lease_expires_at is not None


class BeforeHandlerResult(BaseModel):
    """What a before handler returns: a status and, on success, the provider input."""

    model_config = ConfigDict(extra='allow')

    status: str
    payload: Optional[dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED_STATUS and self.payload is not None


def success_handler_payload(
    original_payload: dict[str, Any], worker_payload: dict[str, Any]
) -> dict[str, Any]:
    """Document passed to a success handler after the side effect worked."""
    return {'original_payload': original_payload, 'worker_payload': worker_payload}


def error_handler_payload(original_payload: dict[str, Any], error: str) -> dict[str, Any]:
    """Document passed to an error handler after the side effect failed."""
    return {'original_payload': original_payload, 'error': error}
