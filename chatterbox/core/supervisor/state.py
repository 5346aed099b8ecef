# chatterbox/core/supervisor/state.py
"""
Supervisor state carried between invocations.

A supervisor never loops or recurses: each run ends by serializing the
next state into the payload of a new db_function task.
"""

from __future__ import annotations

from typing import Annotated, Any, Optional, Self, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chatterbox.core.types.handlers import HandlerId
from chatterbox.core.types.result import Err, Ok, Result

StateT = TypeVar('StateT', bound='SupervisorState')


class SupervisorState(BaseModel):
    model_config = ConfigDict(extra='ignore', frozen=True)

    handler: HandlerId
    task_id: Annotated[int, Field(ge=1)]
    run_count: Annotated[int, Field(ge=0)] = 0

    def next_run(self, **changes: Any) -> Self:
        """State for the following invocation: run_count + 1 plus `changes`."""
        return self.model_copy(update={'run_count': self.run_count + 1, **changes})

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode='json')


class TranscriptionSupervisorState(SupervisorState):
    current_attempt_id: Optional[int] = None
    # Seconds spent waiting for the provider to accept the outbound call.
    kickoff_wait_seconds: Annotated[int, Field(ge=0)] = 0
    # Seconds spent waiting for the webhook after the request was recorded.
    time_waiting_seconds: Annotated[int, Field(ge=0)] = 0


def parse_state(model: type[StateT], payload: dict[str, Any]) -> Result[StateT, str]:
    """Validate a queued payload into `model`; failures come back as a status string."""
    if payload.get('task_id') is None:
        return Err('missing_task_id')
    try:
        return Ok(model.model_validate(payload))
    except ValidationError:
        return Err('invalid_payload')
