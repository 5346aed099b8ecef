"""Unit tests for the chatterbox error hierarchy and Rust-style rendering."""

from __future__ import annotations

import sys

import pytest

from chatterbox.core.errors import (
    ChatterboxError,
    ConfigurationError,
    ErrorCode,
    InvariantViolation,
    MultipleValidationErrors,
    RegistryError,
    SupervisorRunLimitExceeded,
    ValidationReport,
    install_error_handler,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


class TestChatterboxError:
    def test_is_exception_with_message_arg(self) -> None:
        err = ChatterboxError(message='boom')
        assert isinstance(err, Exception)
        assert err.args == ('boom',)

    def test_format_with_code_notes_and_help(self) -> None:
        err = ConfigurationError(
            message='bad policy',
            code=ErrorCode.CONFIG_INVALID_POLICY,
            notes=['max_runs=1'],
            help_text='raise max_runs',
        )
        out = err.format_rust_style(use_colors=False)
        assert 'error[E101]: bad policy' in out
        assert 'note: max_runs=1' in out
        assert 'help:' in out
        assert 'raise max_runs' in out

    def test_str_is_plain(self) -> None:
        err = RegistryError(message='oops', code=ErrorCode.HANDLER_DUPLICATE)
        assert '\033[' not in str(err)

    def test_auto_location_points_at_caller(self) -> None:
        err = ConfigurationError(message='here')
        assert err.location is not None
        assert err.location.file.endswith('test_errors.py')

    def test_fluent_api(self) -> None:
        err = ChatterboxError(message='x').with_note('n1').with_help('h')
        assert err.notes == ['n1']
        assert err.help_text == 'h'


class TestInvariantViolations:
    def test_no_location_detection(self) -> None:
        assert InvariantViolation(message='bad state').location is None

    def test_run_limit_carries_context(self) -> None:
        err = SupervisorRunLimitExceeded('send_email', 12, 20, 20)
        assert isinstance(err, InvariantViolation)
        assert err.code is ErrorCode.SUPERVISOR_RUN_LIMIT_EXCEEDED
        assert err.task_id == 12
        out = str(err)
        assert "supervisor 'send_email' exceeded its run limit" in out
        assert 'run_count=20, max_runs=20' in out


class TestRaiseCollected:
    def test_empty_report_is_noop(self) -> None:
        raise_collected(ValidationReport('phase'))

    def test_single_error_raised_directly(self) -> None:
        report = ValidationReport('phase')
        report.add(ConfigurationError(message='one'))
        with pytest.raises(ConfigurationError, match='one'):
            raise_collected(report)

    def test_multiple_errors_wrapped(self) -> None:
        report = ValidationReport('phase')
        report.add(ConfigurationError(message='one'))
        report.add(ConfigurationError(message='two'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)
        out = str(exc_info.value)
        assert 'one' in out and 'two' in out
        assert 'aborting due to 2 previous errors' in out


def test_error_handler_install_roundtrip() -> None:
    install_error_handler()
    assert sys.excepthook is not sys.__excepthook__
    uninstall_error_handler()
