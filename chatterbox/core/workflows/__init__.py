"""Supervised business workflows built on the attempt supervisor."""

from chatterbox.core.workflows.account_deletion import (
    AccountDeletionSupervisor,
    account_files,
)
from chatterbox.core.workflows.anonymization import (
    AccountAnonymizationSupervisor,
    is_account_anonymized,
)
from chatterbox.core.workflows.comms import (
    SendEmailSupervisor,
    SendSmsSupervisor,
    create_email_message,
    create_sms_message,
)
from chatterbox.core.workflows.file_deletion import (
    FileDeletionSupervisor,
    is_file_deleted,
    mark_file_deleted,
)
from chatterbox.core.workflows.transcription import (
    RecordingTranscriptionSupervisor,
    has_recording_transcript,
    record_transcription_webhook,
)

__all__ = [
    'AccountAnonymizationSupervisor',
    'AccountDeletionSupervisor',
    'FileDeletionSupervisor',
    'RecordingTranscriptionSupervisor',
    'SendEmailSupervisor',
    'SendSmsSupervisor',
    'account_files',
    'create_email_message',
    'create_sms_message',
    'has_recording_transcript',
    'is_account_anonymized',
    'is_file_deleted',
    'mark_file_deleted',
    'record_transcription_webhook',
]
