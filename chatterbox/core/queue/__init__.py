from chatterbox.core.queue.postgres import PostgresTaskQueue
from chatterbox.core.queue.result_types import (
    QueueErrorCode,
    QueueOperationError,
    QueueResult,
)

__all__ = [
    'PostgresTaskQueue',
    'QueueErrorCode',
    'QueueOperationError',
    'QueueResult',
]
