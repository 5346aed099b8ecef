# chatterbox/core/logging.py
"""
Component loggers for chatterbox.

Records emitted while the worker processes a queue task carry that task's
tag (`email#12`, `comms.send_email_supervisor#40`), so supervisor and
handler lines can be traced back to the queue row that ran them.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Optional

# Module-level default level, changed by the CLI via set_default_level()
_default_level: int = logging.INFO

_CURRENT_TASK: ContextVar[Optional[str]] = ContextVar('chatterbox_current_task', default=None)


@contextmanager
def task_context(task_id: int, label: str) -> Iterator[None]:
    """Tag every record logged inside the block with `label#task_id`."""
    token = _CURRENT_TASK.set(f'{label}#{task_id}')
    try:
        yield
    finally:
        _CURRENT_TASK.reset(token)


class TaskContextFilter(logging.Filter):
    """Copies the active task tag onto the record as `queue_task`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.queue_task = _CURRENT_TASK.get()
        return True


class ColoredFormatter(logging.Formatter):
    """Colored single-line formatter for chatterbox components"""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        c = self.COLORS
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'chatterbox.file_deletion' -> 'file_deletion'
        component = record.name.rsplit('.', 1)[-1]
        level_color = self.LEVEL_COLORS.get(record.levelname, c['WHITE'])

        parts = [
            f"{c['LIGHT_BLUE']}[{time_str}]{c['RESET']} ",
            f"{c['WHITE']}{f'[{component}]'.ljust(20)}{c['RESET']}",
            f"{level_color}{f'[{record.levelname}]'.ljust(10)}{c['RESET']}",
        ]
        queue_task = getattr(record, 'queue_task', None)
        if queue_task:
            parts.append(f"{c['GRAY']}({queue_task}){c['RESET']} ")
        parts.append(f"{c['WHITE']}{record.getMessage()}{c['RESET']}")

        formatted = ''.join(parts)
        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)
        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'chatterbox.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.addFilter(TaskContextFilter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)
        logger.propagate = False

    return logger
