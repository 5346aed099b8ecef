# chatterbox/core/types/handlers.py
"""Closed enumeration of handler identifiers.

Queue payloads carry these values under `handler`, `before_handler`,
`success_handler` and `error_handler`. The registry resolves them at startup.
"""

from enum import Enum


class HandlerId(str, Enum):
    # comms: email
    SEND_EMAIL_SUPERVISOR = 'comms.send_email_supervisor'
    GET_EMAIL_PAYLOAD = 'comms.get_email_payload'
    RECORD_EMAIL_SUCCESS = 'comms.record_email_success'
    RECORD_EMAIL_FAILURE = 'comms.record_email_failure'

    # comms: sms
    SEND_SMS_SUPERVISOR = 'comms.send_sms_supervisor'
    GET_SMS_PAYLOAD = 'comms.get_sms_payload'
    RECORD_SMS_SUCCESS = 'comms.record_sms_success'
    RECORD_SMS_FAILURE = 'comms.record_sms_failure'

    # file deletion
    FILE_DELETION_SUPERVISOR = 'files.file_deletion_supervisor'
    GET_FILE_DELETE_PAYLOAD = 'files.get_file_delete_payload'
    RECORD_FILE_DELETE_SUCCESS = 'files.record_file_delete_success'
    RECORD_FILE_DELETE_FAILURE = 'files.record_file_delete_failure'

    # account anonymization
    ACCOUNT_ANONYMIZATION_SUPERVISOR = 'accounts.account_anonymization_supervisor'
    ANONYMIZE_ACCOUNT = 'accounts.anonymize_account'
    RECORD_ANONYMIZATION_SUCCESS = 'accounts.record_anonymization_success'
    RECORD_ANONYMIZATION_FAILURE = 'accounts.record_anonymization_failure'

    # account deletion
    ACCOUNT_DELETION_SUPERVISOR = 'accounts.account_deletion_supervisor'

    # recording transcription
    RECORDING_TRANSCRIPTION_SUPERVISOR = 'transcription.recording_transcription_supervisor'
    GET_TRANSCRIPTION_KICKOFF_PAYLOAD = 'transcription.get_kickoff_payload'
    RECORD_TRANSCRIPTION_REQUEST_SUCCESS = 'transcription.record_request_success'
    RECORD_TRANSCRIPTION_REQUEST_FAILURE = 'transcription.record_request_failure'

    @classmethod
    def parse(cls, value: object) -> 'HandlerId | None':
        """Return the identifier for `value`, or None when it is not a known handler."""
        if isinstance(value, HandlerId):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value)
        except ValueError:
            return None
