# chatterbox/core/workflows/signature.py
"""
Webhook signature verification for the transcription provider.

Header format: ``t=<unix_seconds>,v0=<hex>``. The digest is
HMAC-SHA256(secret, "<timestamp>.<raw_body>"). Timestamps older than the
tolerance are rejected; timestamps in the future are accepted.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import NamedTuple, Optional

from chatterbox.core.defaults import DEFAULT_SIGNATURE_TOLERANCE_SECONDS

SIGNATURE_HEADER = 'ElevenLabs-Signature'
SIGNATURE_VERSION_PREFIX = 'v0='


class ParsedSignature(NamedTuple):
    timestamp: int
    signature: str  # full 'v0=<hex>' element


def parse_signature_header(header: Optional[str]) -> Optional[ParsedSignature]:
    if not header:
        return None
    parts = header.split(',')
    if len(parts) < 2:
        return None

    timestamp_part = parts[0]
    if not timestamp_part.startswith('t='):
        return None
    try:
        timestamp = int(timestamp_part[2:])
    except ValueError:
        return None

    return ParsedSignature(timestamp=timestamp, signature=parts[1])


def compute_signature(secret: str, timestamp: int, raw_body: str) -> str:
    digest = hmac.new(
        secret.encode('utf-8'),
        f'{timestamp}.{raw_body}'.encode('utf-8'),
        hashlib.sha256,
    ).hexdigest()
    return f'{SIGNATURE_VERSION_PREFIX}{digest}'


def signature_is_valid(
    raw_body: str,
    signature_header: Optional[str],
    secret: str,
    current_timestamp: int,
    tolerance_seconds: int = DEFAULT_SIGNATURE_TOLERANCE_SECONDS,
) -> bool:
    """Check a webhook delivery against `secret` as of `current_timestamp` (epoch seconds)."""
    parsed = parse_signature_header(signature_header)
    if parsed is None:
        return False

    if current_timestamp - parsed.timestamp > tolerance_seconds:
        return False

    expected = compute_signature(secret, parsed.timestamp, raw_body)
    return hmac.compare_digest(
        parsed.signature.encode('utf-8'), expected.encode('utf-8')
    )
