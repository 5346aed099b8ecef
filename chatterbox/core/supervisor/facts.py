# chatterbox/core/supervisor/facts.py
"""
Derived supervisor state.

Nothing here touches the database: facts are loaded by the supervisor and
every decision is a pure function of them, so replayed or concurrent
invocations that see the same facts reach the same decision.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, slots=True)
class SupervisorFacts:
    has_succeeded: bool
    num_failures: int
    num_attempts: int
    # Domain check: the work was done by some other path (e.g. file already gone).
    is_done: bool = False

    @property
    def has_outstanding_attempt(self) -> bool:
        """An attempt exists with neither a failure nor (implicitly) a success."""
        return self.num_attempts > self.num_failures


class SupervisorDecision(Enum):
    ALREADY_SUCCEEDED = 'already_succeeded'
    RECORD_SUCCESS = 'record_success'
    GIVE_UP = 'give_up'
    START_ATTEMPT = 'start_attempt'
    RECHECK = 'recheck'


def decide(facts: SupervisorFacts, max_attempts: int) -> SupervisorDecision:
    if facts.has_succeeded:
        return SupervisorDecision.ALREADY_SUCCEEDED
    if facts.is_done:
        return SupervisorDecision.RECORD_SUCCESS
    if facts.num_failures >= max_attempts:
        return SupervisorDecision.GIVE_UP
    if not facts.has_outstanding_attempt:
        return SupervisorDecision.START_ATTEMPT
    return SupervisorDecision.RECHECK


def is_in_progress(facts: SupervisorFacts, max_attempts: int) -> bool:
    """A task with no success and fewer than max_attempts failures."""
    return not facts.has_succeeded and facts.num_failures < max_attempts


def is_stuck(facts: SupervisorFacts, max_attempts: int) -> bool:
    """Retry budget exhausted without a success."""
    return not facts.has_succeeded and facts.num_failures >= max_attempts
