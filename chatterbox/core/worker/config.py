"""Worker configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from chatterbox.core.errors import ConfigurationError, ErrorCode

if TYPE_CHECKING:
    from chatterbox.core.models.resilience import WorkerResilienceConfig


@dataclass
class WorkerConfig:
    # Number of concurrent dequeue/dispatch loops in this process
    concurrency: int = 2
    # Sleep between polls when the queue is empty
    poll_interval_seconds: float = 5.0
    # Stop after this long without claiming anything; None runs forever
    max_idle_seconds: Optional[float] = None
    # Override AppConfig.resilience
    resilience_config: Optional['WorkerResilienceConfig'] = None
    # Log level for the worker process (default: INFO)
    loglevel: int = 20  # logging.INFO

    def __post_init__(self) -> None:
        problems: list[str] = []
        if self.concurrency < 1:
            problems.append(f'concurrency must be >= 1, got {self.concurrency}')
        if self.poll_interval_seconds <= 0:
            problems.append(
                f'poll_interval_seconds must be > 0, got {self.poll_interval_seconds}'
            )
        if self.max_idle_seconds is not None and self.max_idle_seconds <= 0:
            problems.append(f'max_idle_seconds must be > 0, got {self.max_idle_seconds}')
        if problems:
            raise ConfigurationError(
                message='invalid worker configuration',
                code=ErrorCode.CONFIG_INVALID_WORKER,
                notes=problems,
            )
