# chatterbox/core/types/result.py
"""Rust-style Result type used at the queue boundary.

Re-exported so call sites import from one place.
"""

from result import Err, Ok, Result, is_err, is_ok

__all__ = ['Ok', 'Err', 'Result', 'is_ok', 'is_err']
