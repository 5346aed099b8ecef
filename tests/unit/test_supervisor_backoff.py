"""Unit tests for chatterbox.core.supervisor.backoff."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatterbox.core.supervisor.backoff import (
    backoff_delay_seconds,
    fixed_interval_check_at,
    next_check_at,
    utc_now,
)

NOW = datetime(2025, 7, 10, 12, 0, 0, tzinfo=timezone.utc)


@pytest.mark.unit
class TestBackoffDelay:
    """base * 2^failures, no jitter."""

    @pytest.mark.parametrize(
        'failures,expected',
        [(0, 10.0), (1, 20.0), (2, 40.0), (5, 320.0)],
    )
    def test_doubles_per_failure(self, failures: int, expected: float) -> None:
        assert backoff_delay_seconds(10, failures) == expected

    def test_fractional_base(self) -> None:
        assert backoff_delay_seconds(0.5, 3) == 4.0

    def test_negative_failures_rejected(self) -> None:
        with pytest.raises(ValueError, match='num_failures'):
            backoff_delay_seconds(5, -1)

    def test_negative_base_rejected(self) -> None:
        with pytest.raises(ValueError, match='base_delay_seconds'):
            backoff_delay_seconds(-1, 0)


@pytest.mark.unit
class TestNextCheckAt:
    def test_email_policy_recheck_after_first_failure(self) -> None:
        """5s base, one failure -> 10s later."""
        assert next_check_at(NOW, 5, 1) == NOW + timedelta(seconds=10)

    def test_no_failures_uses_base(self) -> None:
        assert next_check_at(NOW, 10, 0) == NOW + timedelta(seconds=10)

    def test_deterministic(self) -> None:
        assert next_check_at(NOW, 10, 2) == next_check_at(NOW, 10, 2)


@pytest.mark.unit
class TestFixedInterval:
    def test_adds_interval(self) -> None:
        assert fixed_interval_check_at(NOW, 3) == NOW + timedelta(seconds=3)

    def test_non_positive_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            fixed_interval_check_at(NOW, 0)


@pytest.mark.unit
def test_utc_now_is_timezone_aware() -> None:
    assert utc_now().tzinfo is not None
