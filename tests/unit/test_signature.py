"""Unit tests for webhook signature verification."""

from __future__ import annotations

import pytest

from chatterbox.core.workflows.signature import (
    compute_signature,
    parse_signature_header,
    signature_is_valid,
)

SECRET = 'whsec_test_secret'
TIMESTAMP = 1752155502
BODY = '{"type":"speech_to_text_transcription","data":{"request_id":"test123"}}'


def _header(secret: str = SECRET, timestamp: int = TIMESTAMP, body: str = BODY) -> str:
    return f't={timestamp},{compute_signature(secret, timestamp, body)}'


@pytest.mark.unit
class TestSignatureIsValid:
    def test_exact_timestamp_valid(self) -> None:
        assert signature_is_valid(BODY, _header(), SECRET, TIMESTAMP) is True

    def test_recent_timestamp_valid(self) -> None:
        assert signature_is_valid(BODY, _header(), SECRET, TIMESTAMP + 100) is True

    def test_future_timestamp_accepted(self) -> None:
        assert signature_is_valid(BODY, _header(), SECRET, TIMESTAMP - 100) is True

    def test_stale_timestamp_rejected(self) -> None:
        assert signature_is_valid(BODY, _header(), SECRET, TIMESTAMP + 1898) is False

    def test_tolerance_boundary_inclusive(self) -> None:
        assert signature_is_valid(BODY, _header(), SECRET, TIMESTAMP + 1800) is True

    def test_wrong_secret_rejected(self) -> None:
        assert signature_is_valid(BODY, _header(secret='other'), SECRET, TIMESTAMP) is False

    def test_modified_payload_rejected(self) -> None:
        tampered = BODY.replace('test123', 'test124')
        assert signature_is_valid(tampered, _header(), SECRET, TIMESTAMP) is False

    def test_missing_signature_element_rejected(self) -> None:
        assert signature_is_valid(BODY, f't={TIMESTAMP}', SECRET, TIMESTAMP) is False

    def test_missing_timestamp_rejected(self) -> None:
        signature = compute_signature(SECRET, TIMESTAMP, BODY)
        assert signature_is_valid(BODY, signature, SECRET, TIMESTAMP) is False

    def test_empty_header_rejected(self) -> None:
        assert signature_is_valid(BODY, '', SECRET, TIMESTAMP) is False
        assert signature_is_valid(BODY, None, SECRET, TIMESTAMP) is False


@pytest.mark.unit
class TestParseSignatureHeader:
    def test_parses_both_parts(self) -> None:
        parsed = parse_signature_header('t=12,v0=abc')
        assert parsed is not None
        assert parsed.timestamp == 12
        assert parsed.signature == 'v0=abc'

    def test_timestamp_must_come_first(self) -> None:
        assert parse_signature_header('v0=abc,t=12') is None

    def test_non_numeric_timestamp(self) -> None:
        assert parse_signature_header('t=soon,v0=abc') is None

    def test_computed_signature_has_version_prefix(self) -> None:
        assert compute_signature(SECRET, TIMESTAMP, BODY).startswith('v0=')
