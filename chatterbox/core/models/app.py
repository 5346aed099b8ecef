# chatterbox/core/models/app.py
import logging
import math
from typing import Annotated, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from chatterbox.core.defaults import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
)
from chatterbox.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from chatterbox.core.models.broker import PostgresConfig
from chatterbox.core.models.resilience import WorkerResilienceConfig
from chatterbox.core.utils.url import mask_database_url


class SupervisorPolicy(BaseModel):
    """
    Retry budget of one supervised workflow.

    - max_attempts: failures after which the workflow gives up
    - base_delay_seconds: recheck delay is base_delay_seconds * 2^failures
    - max_runs: hard cap on supervisor self-rescheduling (bug tripwire)
    - exhaustion_is_success: report a given-up workflow as succeeded so
      dependents are not blocked
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: Annotated[int, Field(ge=1, le=100)]
    base_delay_seconds: Annotated[float, Field(gt=0, le=3600)]
    max_runs: Annotated[int, Field(ge=1, le=100_000)]
    exhaustion_is_success: bool = False

    def _collect_errors(self, report: ValidationReport) -> None:
        if self.max_runs <= self.max_attempts:
            report.add(
                ConfigurationError(
                    message='max_runs must be greater than max_attempts',
                    code=ErrorCode.CONFIG_INVALID_POLICY,
                    notes=[
                        f'max_attempts={self.max_attempts}',
                        f'max_runs={self.max_runs}',
                    ],
                    help_text='every attempt needs at least one run to start it and one to observe it',
                )
            )

    @model_validator(mode='after')
    def validate_policy(self) -> Self:
        report = ValidationReport('supervisor policy')
        self._collect_errors(report)
        raise_collected(report)
        return self


class TranscriptionPolicy(SupervisorPolicy):
    """
    Policy for the webhook-driven transcription supervisor.

    The supervisor polls at a fixed `recheck_interval_seconds` while an
    attempt is outstanding. An attempt fails with `kickoff_timeout` when the
    outbound call has not been confirmed within `kickoff_timeout_seconds`, and
    with `webhook_timeout` when no callback arrived within `max_wait_seconds`.
    """

    max_attempts: Annotated[int, Field(ge=1, le=100)] = 2
    base_delay_seconds: Annotated[float, Field(gt=0, le=3600)] = 3
    max_runs: Annotated[int, Field(ge=1, le=100_000)] = 1000

    recheck_interval_seconds: Annotated[int, Field(ge=1, le=600)] = 3
    max_wait_seconds: Annotated[int, Field(ge=1, le=86_400)] = 300
    # Longer than one lease so a crashed kickoff gets re-run before timing out.
    kickoff_timeout_seconds: Annotated[int, Field(ge=1, le=86_400)] = 900
    webhook_secret: Optional[SecretStr] = None
    signature_tolerance_seconds: Annotated[int, Field(ge=1)] = (
        DEFAULT_SIGNATURE_TOLERANCE_SECONDS
    )

    def runs_per_attempt(self) -> int:
        """Upper bound of supervisor runs one attempt can take."""
        interval = self.recheck_interval_seconds
        # kickoff + request wait + webhook wait + response processing
        return (
            math.ceil(self.kickoff_timeout_seconds / interval)
            + math.ceil(self.max_wait_seconds / interval)
            + 3
        )

    def _collect_errors(self, report: ValidationReport) -> None:
        super()._collect_errors(report)
        needed = self.max_attempts * self.runs_per_attempt()
        if self.max_runs < needed:
            report.add(
                ConfigurationError(
                    message='max_runs cannot cover the webhook wait of every attempt',
                    code=ErrorCode.CONFIG_INVALID_POLICY,
                    notes=[
                        f'max_attempts={self.max_attempts}, runs per attempt={self.runs_per_attempt()}',
                        f'max_runs={self.max_runs}, needed at least {needed}',
                    ],
                    help_text='raise max_runs or recheck_interval_seconds, or lower the wait timeouts',
                )
            )


def _email_policy() -> SupervisorPolicy:
    return SupervisorPolicy(max_attempts=2, base_delay_seconds=5, max_runs=20)


def _sms_policy() -> SupervisorPolicy:
    return SupervisorPolicy(max_attempts=2, base_delay_seconds=5, max_runs=20)


def _file_deletion_policy() -> SupervisorPolicy:
    return SupervisorPolicy(
        max_attempts=3, base_delay_seconds=10, max_runs=100, exhaustion_is_success=True
    )


def _anonymization_policy() -> SupervisorPolicy:
    return SupervisorPolicy(
        max_attempts=3, base_delay_seconds=10, max_runs=100, exhaustion_is_success=True
    )


def _account_deletion_policy() -> SupervisorPolicy:
    # A stuck child must surface, so the root never retries.
    return SupervisorPolicy(max_attempts=1, base_delay_seconds=10, max_runs=1000)


class WorkflowsConfig(BaseModel):
    """One policy per supervised workflow, injected into each supervisor."""

    model_config = ConfigDict(frozen=True)

    send_email: SupervisorPolicy = Field(default_factory=_email_policy)
    send_sms: SupervisorPolicy = Field(default_factory=_sms_policy)
    file_deletion: SupervisorPolicy = Field(default_factory=_file_deletion_policy)
    account_anonymization: SupervisorPolicy = Field(
        default_factory=_anonymization_policy
    )
    account_deletion: SupervisorPolicy = Field(
        default_factory=_account_deletion_policy
    )
    recording_transcription: TranscriptionPolicy = Field(
        default_factory=TranscriptionPolicy
    )


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker: PostgresConfig
    # Lease written by each dequeue; the only crash-recovery window.
    lease_seconds: Annotated[int, Field(ge=1, le=86_400)] = DEFAULT_LEASE_SECONDS
    workflows: WorkflowsConfig = Field(default_factory=WorkflowsConfig)
    resilience: WorkerResilienceConfig = Field(default_factory=WorkerResilienceConfig)

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the AppConfig in a human-readable format.
        Masks the database password and webhook secret.
        """
        if logger is None:
            logger = logging.getLogger()
        logger.info('AppConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []

        lines.append('  broker:')
        lines.append(f'    database_url: {mask_database_url(self.broker.database_url)}')
        lines.append(f'    pool_size: {self.broker.pool_size}')
        lines.append(f'    max_overflow: {self.broker.max_overflow}')
        lines.append(f'  lease_seconds: {self.lease_seconds}')

        lines.append('  workflows:')
        for name, policy in self.workflows:
            gave_up = 'success' if policy.exhaustion_is_success else 'failure'
            lines.append(
                f'    {name}: max_attempts={policy.max_attempts}, '
                f'base_delay={policy.base_delay_seconds}s, max_runs={policy.max_runs}, '
                f'exhaustion={gave_up}'
            )
        transcription = self.workflows.recording_transcription
        secret_state = 'set' if transcription.webhook_secret else 'missing'
        lines.append(
            f'    recording_transcription: recheck={transcription.recheck_interval_seconds}s, '
            f'max_wait={transcription.max_wait_seconds}s, webhook_secret={secret_state}'
        )

        lines.append('  resilience:')
        lines.append(f'    db_retry: {self.resilience.summary()}')
        return '\n'.join(lines)
