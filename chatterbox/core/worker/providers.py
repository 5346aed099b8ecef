# chatterbox/core/worker/providers.py
"""
External side effects, injected into the worker.

Each provider takes the document produced by the task's before handler and
returns a document handed to its success handler. Raising marks the
attempt failed; the error text is passed to the error handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chatterbox.core.types.status import TaskType

Provider = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class ProviderSet:
    send_email: Provider
    send_sms: Provider
    delete_file: Provider
    # Must return {'request_id': <provider correlation id>}
    start_transcription: Provider

    def for_task_type(self, task_type: TaskType) -> Provider:
        match task_type:
            case TaskType.EMAIL:
                return self.send_email
            case TaskType.SMS:
                return self.send_sms
            case TaskType.FILE_DELETE:
                return self.delete_file
            case TaskType.TRANSCRIPTION_KICKOFF:
                return self.start_transcription
            case _:
                raise ValueError(f'{task_type.value} tasks do not call a provider')
