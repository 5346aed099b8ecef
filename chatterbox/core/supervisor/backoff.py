# chatterbox/core/supervisor/backoff.py
"""Pure recheck-time computation for supervisors. No jitter is applied."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay_seconds(base_delay_seconds: float, num_failures: int) -> float:
    """base_delay_seconds * 2^num_failures."""
    if base_delay_seconds < 0:
        raise ValueError(f'base_delay_seconds must be >= 0, got {base_delay_seconds}')
    if num_failures < 0:
        raise ValueError(f'num_failures must be >= 0, got {num_failures}')
    return base_delay_seconds * (2**num_failures)


def next_check_at(
    now: datetime, base_delay_seconds: float, num_failures: int
) -> datetime:
    """When a supervisor with `num_failures` recorded failures looks again."""
    return now + timedelta(seconds=backoff_delay_seconds(base_delay_seconds, num_failures))


def fixed_interval_check_at(now: datetime, interval_seconds: float) -> datetime:
    """Polling without growth, used while waiting on an external callback."""
    if interval_seconds <= 0:
        raise ValueError(f'interval_seconds must be > 0, got {interval_seconds}')
    return now + timedelta(seconds=interval_seconds)
