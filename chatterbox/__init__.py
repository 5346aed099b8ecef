"""Chatterbox - supervised background jobs on a PostgreSQL lease queue"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Chatterbox
from .core.models.app import (
    AppConfig,
    SupervisorPolicy,
    TranscriptionPolicy,
    WorkflowsConfig,
)
from .core.models.broker import PostgresConfig
from .core.models.resilience import WorkerResilienceConfig
from .core.models.tasks import QueuedTask, TaskInfo
from .core.queue import (
    PostgresTaskQueue,
    QueueErrorCode,
    QueueOperationError,
    QueueResult,
)
from .core.types.handlers import HandlerId
from .core.types.status import FactOutcome, SupervisorStatus, TaskType
from .core.errors import (
    ChatterboxError,
    ConfigurationError,
    ErrorCode,
    RegistryError,
    SupervisorRunLimitExceeded,
    ValidationReport,
)
from .core.worker.config import WorkerConfig
from .core.worker.providers import Provider, ProviderSet
from .core.worker.worker import Worker
from .core.workflows.signature import signature_is_valid
from .core.types.result import Result, Ok, Err, is_ok, is_err

__all__ = [
    # Core
    'Chatterbox',
    'AppConfig',
    'PostgresConfig',
    'SupervisorPolicy',
    'TranscriptionPolicy',
    'WorkflowsConfig',
    'WorkerResilienceConfig',
    # Queue
    'PostgresTaskQueue',
    'QueuedTask',
    'TaskInfo',
    'QueueErrorCode',
    'QueueOperationError',
    'QueueResult',
    # Types
    'HandlerId',
    'FactOutcome',
    'SupervisorStatus',
    'TaskType',
    # Errors
    'ChatterboxError',
    'ConfigurationError',
    'ErrorCode',
    'RegistryError',
    'SupervisorRunLimitExceeded',
    'ValidationReport',
    # Worker
    'Worker',
    'WorkerConfig',
    'Provider',
    'ProviderSet',
    # Webhooks
    'signature_is_valid',
    # Result type
    'Result',
    'Ok',
    'Err',
    'is_ok',
    'is_err',
]
