from chatterbox.core.supervisor.backoff import (
    backoff_delay_seconds,
    fixed_interval_check_at,
    next_check_at,
)
from chatterbox.core.supervisor.base import (
    AttemptSupervisor,
    FactTables,
    KickoffGate,
    RetryingSupervisor,
)
from chatterbox.core.supervisor.facts import (
    SupervisorDecision,
    SupervisorFacts,
    decide,
    is_in_progress,
    is_stuck,
)
from chatterbox.core.supervisor.state import (
    SupervisorState,
    TranscriptionSupervisorState,
    parse_state,
)

__all__ = [
    'AttemptSupervisor',
    'FactTables',
    'KickoffGate',
    'RetryingSupervisor',
    'SupervisorDecision',
    'SupervisorFacts',
    'SupervisorState',
    'TranscriptionSupervisorState',
    'backoff_delay_seconds',
    'decide',
    'fixed_interval_check_at',
    'is_in_progress',
    'is_stuck',
    'next_check_at',
    'parse_state',
]
