# chatterbox/core/workflows/responses.py
"""Documents returned by business-facing entry points."""

from __future__ import annotations

from typing import Any


def success_payload(**values: Any) -> dict[str, Any]:
    return {'success': True, **values}


def error_payload(error: str, detail: str, hint: str) -> dict[str, Any]:
    """
    User-visible failure.

    `error` names the operation, `detail` is a short human category and
    `hint` is the machine-readable validation failure.
    """
    return {'success': False, 'error': error, 'detail': detail, 'hint': hint}
