"""Rust-style error display for chatterbox configuration and invariant errors."""

from __future__ import annotations

import inspect
import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

# Absolute path to the chatterbox package directory.
# Used by _find_user_frame to tell library frames from user code.
_CHATTERBOX_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup, registry and supervisor errors.

    Organized by category:
    - E100-E199: Config/CLI errors
    - E200-E299: Handler registry errors
    - E300-E399: Supervisor invariant violations
    """

    # Config/CLI (E100-E199)
    BROKER_INVALID_URL = 'E100'
    CONFIG_INVALID_POLICY = 'E101'
    CONFIG_INVALID_RESILIENCE = 'E102'
    CLI_INVALID_ARGS = 'E103'
    WORKER_INVALID_LOCATOR = 'E104'
    CONFIG_INVALID_WORKER = 'E105'

    # Registry (E200-E299)
    HANDLER_NOT_REGISTERED = 'E200'
    HANDLER_DUPLICATE = 'E201'
    HANDLER_INVALID_RESULT = 'E202'

    # Supervisor invariants (E300-E399)
    SUPERVISOR_RUN_LIMIT_EXCEEDED = 'E300'
    TASK_INVALID_PAYLOAD = 'E301'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    YELLOW = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('CHATTERBOX_FORCE_COLOR'):
        return True

    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _should_show_verbose() -> bool:
    """Determine if the full traceback should be shown."""
    return _env_flag('CHATTERBOX_VERBOSE')


def _should_use_plain_errors() -> bool:
    """Determine if plain Python errors should be used instead of Rust-style."""
    return _env_flag('CHATTERBOX_PLAIN_ERRORS')


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int
    column: int | None = None
    end_column: int | None = None

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(
            file=frame.f_code.co_filename,
            line=frame.f_lineno,
        )

    def get_source_line(self) -> str | None:
        """Read the source line from the file."""
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        """Format as 'file:line' or 'file:line:col'."""
        if self.column is not None:
            return f'{self.file}:{self.line}:{self.column}'
        return f'{self.file}:{self.line}'


@dataclass
class ChatterboxError(Exception):
    """Base exception for chatterbox startup and invariant errors.

    Provides Rust-style error formatting with:
    - Error code and category
    - Source location with code snippet
    - Notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    # Runtime errors raised deep inside a worker have no useful user frame
    detect_location: ClassVar[bool] = True

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None and self.detect_location:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> ChatterboxError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> ChatterboxError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format the error in Rust style."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        # error[E100]: message
        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            source_line = self.location.get_source_line()
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )

            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')

                if self.location.column is not None:
                    start_col = self.location.column
                    end_col = self.location.end_column or (start_col + 1)
                    underline = ' ' * start_col + '^' * max(1, end_col - start_col)
                else:
                    stripped = source_line.lstrip()
                    indent = len(source_line) - len(stripped)
                    underline = ' ' * indent + '^' * len(stripped)
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}'
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text rendering, safe for log records and error rows."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _chatterbox_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for ChatterboxError exceptions."""
    if _should_use_plain_errors() or not isinstance(exc_value, ChatterboxError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)

    if _should_show_verbose():
        print(file=sys.stderr)
        c = _Colors if _should_use_colors() else _NoColors
        print(
            f'{c.DIM}Full traceback (CHATTERBOX_VERBOSE=1):{c.RESET}',
            file=sys.stderr,
        )
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _chatterbox_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(ChatterboxError):
    """Raised when app, broker or workflow configuration is invalid."""

    pass


@dataclass
class RegistryError(ChatterboxError):
    """Raised when a handler registry operation fails."""

    pass


@dataclass
class InvariantViolation(ChatterboxError):
    """Raised when orchestration state proves a scheduling bug.

    Never retried: the worker records it and retires the queue task.
    """

    detect_location: ClassVar[bool] = False


class SupervisorRunLimitExceeded(InvariantViolation):
    """A supervisor rescheduled itself more often than its policy allows."""

    def __init__(
        self, supervisor: str, task_id: int, run_count: int, max_runs: int
    ) -> None:
        InvariantViolation.__init__(
            self,
            message=f"supervisor '{supervisor}' exceeded its run limit",
            code=ErrorCode.SUPERVISOR_RUN_LIMIT_EXCEEDED,
            notes=[
                f'workflow task id: {task_id}',
                f'run_count={run_count}, max_runs={max_runs}',
            ],
            help_text='a recheck loop is not converging; inspect the attempt and fact rows',
        )
        self.supervisor = supervisor
        self.task_id = task_id
        self.run_count = run_count
        self.max_runs = max_runs


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple ChatterboxError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[ChatterboxError] = []

    def add(self, error: ChatterboxError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        """Format all collected errors, then append an aborting summary."""
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(ChatterboxError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of chatterbox internals."""
    frame = inspect.currentframe()

    while frame is not None:
        filename = frame.f_code.co_filename

        if filename.startswith('<'):
            frame = frame.f_back
            continue

        if (
            not filename.startswith(_CHATTERBOX_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame

        frame = frame.f_back

    return None
