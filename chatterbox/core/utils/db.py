# chatterbox/core/utils/db.py
"""Helpers for classifying database errors raised under SQLAlchemy/psycopg."""

from __future__ import annotations

from psycopg import InterfaceError, OperationalError
from sqlalchemy.exc import DBAPIError, OperationalError as SAOperationalError


def is_dbapi_disconnect(exc: DBAPIError) -> bool:
    """Check whether a SQLAlchemy DBAPIError represents a connection disconnect."""
    connection_invalidated = bool(getattr(exc, 'connection_invalidated', False))
    is_disconnect = bool(getattr(exc, 'is_disconnect', False))
    return connection_invalidated or is_disconnect


def is_retryable_connection_error(exc: BaseException) -> bool:
    """Check whether an exception is a transient connection error worth retrying."""
    match exc:
        case OperationalError() | InterfaceError() | SAOperationalError():
            return True
        case DBAPIError() as db_exc if is_dbapi_disconnect(db_exc):
            return True
        case _:
            return False


def describe_db_error(exc: BaseException) -> str:
    """One-line description of a database error for error rows and logs."""
    match exc:
        case DBAPIError(orig=orig) if orig is not None:
            return f'{type(orig).__name__}: {orig}'.strip()
        case _:
            return f'{type(exc).__name__}: {exc}'.strip()
