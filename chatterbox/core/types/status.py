# chatterbox/core/types/status.py
"""
Core enums used throughout the application.
This module should not import from other application modules.
"""

from enum import Enum


class TaskType(Enum):
    """Closed set of queue task types a worker knows how to dispatch."""

    DB_FUNCTION = 'db_function'  # Runs a registered handler inside the database session.
    EMAIL = 'email'
    SMS = 'sms'
    FILE_DELETE = 'file_delete'
    TRANSCRIPTION_KICKOFF = 'transcription_kickoff'

    @property
    def uses_provider(self) -> bool:
        """Whether the worker must call an external provider for this type."""
        return self in PROVIDER_TASK_TYPES


PROVIDER_TASK_TYPES: frozenset[TaskType] = frozenset({
    TaskType.EMAIL,
    TaskType.SMS,
    TaskType.FILE_DELETE,
    TaskType.TRANSCRIPTION_KICKOFF,
})


class SupervisorStatus(str, Enum):
    """The `status` a supervisor invocation reports back to the worker."""

    # Terminal
    SUCCEEDED = 'succeeded'
    MAX_ATTEMPTS_REACHED = 'max_attempts_reached'
    FAILED = 'failed'

    # Generic attempt loop
    ATTEMPT_SCHEDULED = 'attempt_scheduled'
    RECHECK_SCHEDULED = 'recheck_scheduled'

    # Account deletion phases
    AWAITING_FILE_DELETION = 'awaiting_file_deletion'
    AWAITING_ANONYMIZATION = 'awaiting_anonymization'

    # Recording transcription
    KICKOFF_SCHEDULED = 'kickoff_scheduled'
    KICKOFF_IN_PROGRESS = 'kickoff_in_progress'
    WAITING_FOR_WEBHOOK = 'waiting_for_webhook'
    RESPONSE_PROCESSED = 'response_processed'
    WEBHOOK_TIMEOUT = 'webhook_timeout'
    KICKOFF_TIMEOUT = 'kickoff_timeout'

    @property
    def is_terminal(self) -> bool:
        return self in SUPERVISOR_TERMINAL_STATUSES


SUPERVISOR_TERMINAL_STATUSES: frozenset[SupervisorStatus] = frozenset({
    SupervisorStatus.SUCCEEDED,
    SupervisorStatus.MAX_ATTEMPTS_REACHED,
    SupervisorStatus.FAILED,
})


class FactOutcome(str, Enum):
    """Result of trying to record a success or failure fact for an attempt."""

    RECORDED = 'recorded'
    DUPLICATE = 'duplicate'  # same fact already present
    CONFLICTING = 'conflicting'  # the opposite fact already present
    ATTEMPT_NOT_FOUND = 'attempt_not_found'
