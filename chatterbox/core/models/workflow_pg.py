"""
SQLAlchemy models for business entities and supervised workflows.

Business tables hold only the columns the workflows reason over. Every
supervised workflow has the same four-table shape:

    <workflow>_tasks              one row per logical unit of work
    <workflow>_attempts           append-only, one row per scheduling cycle
    <workflow>_attempts_succeeded at most one row per attempt
    <workflow>_attempts_failed    at most one row per attempt

Column names are shared across workflows (task_id, attempt_id,
error_message) so the generic supervisor can address any of them.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chatterbox.core.models.task_pg import Base


class _CreatedAtMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# =============================================================================
# Business entities
# =============================================================================


class AccountModel(_CreatedAtMixin, Base):
    __tablename__ = 'accounts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True, unique=True)
    phone_number: Mapped[Optional[str]] = mapped_column(Text, nullable=True, unique=True)
    hashed_password: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class AccountFlagModel(_CreatedAtMixin, Base):
    """Marker rows such as 'deleted' and 'anonymized'."""

    __tablename__ = 'account_flags'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False
    )
    flag: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (UniqueConstraint('account_id', 'flag', name='uq_account_flag'),)


class FileModel(_CreatedAtMixin, Base):
    __tablename__ = 'files'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    bucket: Mapped[str] = mapped_column(Text, nullable=False)
    object_key: Mapped[str] = mapped_column(Text, nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (UniqueConstraint('bucket', 'object_key', name='uq_file_location'),)


class FileMetadataModel(_CreatedAtMixin, Base):
    """Key/value metadata; a `deleted` = true row marks the object as gone."""

    __tablename__ = 'file_metadata'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('files.id', ondelete='CASCADE'), nullable=False
    )
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[Any] = mapped_column(JSONB, nullable=False)

    __table_args__ = (UniqueConstraint('file_id', 'key', name='uq_file_metadata_key'),)


class RecordingModel(_CreatedAtMixin, Base):
    """An audio recording owned by an account and stored as a file."""

    __tablename__ = 'recordings'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False, index=True
    )
    file_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('files.id', ondelete='RESTRICT'), nullable=False
    )


class RecordingTranscriptModel(_CreatedAtMixin, Base):
    __tablename__ = 'recording_transcripts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    recording_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('recordings.id', ondelete='CASCADE'),
        nullable=False,
        unique=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    words: Mapped[Optional[Any]] = mapped_column(JSONB, nullable=True)
    language_code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    language_probability: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(4, 3), nullable=True
    )


class MessageModel(_CreatedAtMixin, Base):
    __tablename__ = 'comms_messages'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # 'email' | 'sms'


class EmailMessageModel(Base):
    __tablename__ = 'comms_email_messages'

    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('comms_messages.id', ondelete='CASCADE'), primary_key=True
    )
    from_address: Mapped[str] = mapped_column(Text, nullable=False)
    to_address: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    html: Mapped[str] = mapped_column(Text, nullable=False)


class SmsMessageModel(Base):
    __tablename__ = 'comms_sms_messages'

    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('comms_messages.id', ondelete='CASCADE'), primary_key=True
    )
    to_number: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)


class EmailTemplateModel(_CreatedAtMixin, Base):
    __tablename__ = 'comms_email_templates'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    template_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    body_params: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class SmsTemplateModel(_CreatedAtMixin, Base):
    __tablename__ = 'comms_sms_templates'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    template_key: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    body_params: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# Send email
# =============================================================================


class SendEmailTaskModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_email_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('comms_messages.id', ondelete='CASCADE'), nullable=False, index=True
    )


class SendEmailAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_email_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_email_tasks.id', ondelete='CASCADE'), nullable=False, index=True
    )


class SendEmailAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_email_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_email_attempts.id', ondelete='CASCADE'), primary_key=True
    )


class SendEmailAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_email_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_email_attempts.id', ondelete='CASCADE'), primary_key=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# Send SMS
# =============================================================================


class SendSmsTaskModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_sms_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('comms_messages.id', ondelete='CASCADE'), nullable=False, index=True
    )


class SendSmsAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_sms_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_sms_tasks.id', ondelete='CASCADE'), nullable=False, index=True
    )


class SendSmsAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_sms_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_sms_attempts.id', ondelete='CASCADE'), primary_key=True
    )


class SendSmsAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'send_sms_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('send_sms_attempts.id', ondelete='CASCADE'), primary_key=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# File deletion
# =============================================================================


class FileDeletionTaskModel(_CreatedAtMixin, Base):
    __tablename__ = 'file_deletion_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    file_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('files.id', ondelete='CASCADE'), nullable=False, index=True
    )


class FileDeletionAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'file_deletion_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('file_deletion_tasks.id', ondelete='CASCADE'), nullable=False, index=True
    )


class FileDeletionAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'file_deletion_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('file_deletion_attempts.id', ondelete='CASCADE'), primary_key=True
    )


class FileDeletionAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'file_deletion_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('file_deletion_attempts.id', ondelete='CASCADE'), primary_key=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# Account anonymization
# =============================================================================


class AccountAnonymizationTaskModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_anonymization_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('accounts.id', ondelete='CASCADE'), nullable=False, index=True
    )


class AccountAnonymizationAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_anonymization_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_anonymization_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )


class AccountAnonymizationAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_anonymization_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_anonymization_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )


class AccountAnonymizationAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_anonymization_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_anonymization_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# Account deletion (root of the composite workflow)
# =============================================================================


class AccountDeletionTaskModel(_CreatedAtMixin, Base):
    """No FK to accounts: the deletion record outlives what it deletes."""

    __tablename__ = 'account_deletion_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class AccountDeletionAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_deletion_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_deletion_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )


class AccountDeletionAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_deletion_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_deletion_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )


class AccountDeletionAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'account_deletion_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('account_deletion_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# =============================================================================
# Recording transcription (webhook completion)
# =============================================================================


class RecordingTranscriptionTaskModel(_CreatedAtMixin, Base):
    __tablename__ = 'recording_transcription_tasks'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    recording_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('recordings.id', ondelete='CASCADE'), nullable=False, index=True
    )
    created_by: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey('accounts.id', ondelete='CASCADE'), nullable=True
    )


class RecordingTranscriptionAttemptModel(_CreatedAtMixin, Base):
    __tablename__ = 'recording_transcription_attempts'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('recording_transcription_tasks.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )


class RecordingTranscriptionAttemptSucceededModel(_CreatedAtMixin, Base):
    __tablename__ = 'recording_transcription_attempts_succeeded'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('recording_transcription_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )


class RecordingTranscriptionAttemptFailedModel(_CreatedAtMixin, Base):
    __tablename__ = 'recording_transcription_attempts_failed'

    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('recording_transcription_attempts.id', ondelete='CASCADE'),
        primary_key=True,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TranscriptionRequestModel(_CreatedAtMixin, Base):
    """Stage 1: the provider accepted the outbound call for an attempt."""

    __tablename__ = 'transcription_requests'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    attempt_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('recording_transcription_attempts.id', ondelete='CASCADE'),
        nullable=False,
        unique=True,
    )
    provider_request_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)


class TranscriptionResponseModel(Base):
    """Stage 2: the raw, unverified webhook delivery for a request."""

    __tablename__ = 'transcription_responses'

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey('transcription_requests.id', ondelete='CASCADE'),
        nullable=False,
        unique=True,
    )
    # Exact bytes as received; the signature is computed over them.
    raw_body: Mapped[str] = mapped_column(Text, nullable=False)
    signature_header: Mapped[str] = mapped_column(Text, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
