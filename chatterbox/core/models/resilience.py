# chatterbox/core/models/resilience.py
"""
How a worker poll loop rides out database outages.

A claim or completion that fails with a retryable connection error makes
the loop back off and try again; anything else stops the loop. This is
unrelated to workflow retries, which are supervisor attempts recorded as
facts.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Annotated, Self

from pydantic import BaseModel, Field, model_validator

from chatterbox.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)

# Floor for any single sleep, so jitter never turns into a busy loop.
MIN_RETRY_DELAY_SECONDS = 0.1


@dataclass
class DbRetryBackoff:
    """Per-loop retry state: exponential growth capped at max_ms, +/-25% jitter."""

    initial_ms: int
    max_ms: int
    max_attempts: int  # 0: retry forever
    attempts: int = 0

    def reset(self) -> None:
        self.attempts = 0

    def can_retry(self) -> bool:
        return self.max_attempts == 0 or self.attempts < self.max_attempts

    def next_delay_seconds(self) -> float:
        self.attempts += 1
        base_ms = min(self.max_ms, self.initial_ms * 2 ** (self.attempts - 1))
        jitter_ms = base_ms * 0.25
        delay_ms = base_ms + random.uniform(-jitter_ms, jitter_ms)
        return max(MIN_RETRY_DELAY_SECONDS, delay_ms / 1000.0)


class WorkerResilienceConfig(BaseModel):
    db_retry_initial_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=500,
        description='First backoff after a lost database connection (100ms-60s)',
    )
    db_retry_max_ms: Annotated[int, Field(ge=500, le=300_000)] = Field(
        default=30_000,
        description='Backoff ceiling while the database stays unreachable (500ms-5min)',
    )
    db_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description='Consecutive failures before a poll loop gives up; 0 retries forever',
    )

    @model_validator(mode='after')
    def validate_backoff(self) -> Self:
        report = ValidationReport('resilience')
        if self.db_retry_max_ms < self.db_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='db_retry_max_ms must be >= db_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'db_retry_initial_ms={self.db_retry_initial_ms}ms',
                        f'db_retry_max_ms={self.db_retry_max_ms}ms',
                    ],
                    help_text='increase db_retry_max_ms or reduce db_retry_initial_ms',
                )
            )
        raise_collected(report)
        return self

    def new_backoff(self) -> DbRetryBackoff:
        """Fresh retry state for one poll loop."""
        return DbRetryBackoff(
            initial_ms=self.db_retry_initial_ms,
            max_ms=self.db_retry_max_ms,
            max_attempts=self.db_retry_max_attempts,
        )

    def summary(self) -> str:
        attempts = self.db_retry_max_attempts or 'infinite'
        return (
            f'initial={self.db_retry_initial_ms}ms, max={self.db_retry_max_ms}ms, '
            f'attempts={attempts}'
        )
