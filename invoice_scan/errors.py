"""Exception hierarchy for the invoice scan service."""

from __future__ import annotations


class ScanError(Exception):
    """Base class for all invoice scan errors."""


class ConfigurationError(ScanError):
    """Missing or unusable mailbox setup. Not retryable without user action."""


class MailboxNotFoundError(ConfigurationError):
    """The mailbox connection does not exist or is disconnected."""


class MissingCredentialsError(ConfigurationError):
    """The mailbox connection has no usable access token."""


class MailboxAPIError(ScanError):
    """The remote mailbox API answered with a non-2xx status."""

    def __init__(self, status_code: int, path: str, body: str = "") -> None:
        super().__init__(f"Mailbox API {path} failed ({status_code}): {body[:200]}")
        self.status_code = status_code
        self.path = path
        self.body = body


class MailboxTransientError(MailboxAPIError):
    """429 or 5xx from the remote mailbox API; worth retrying.

    ``retry_after`` carries the server's ``Retry-After`` seconds, if any.
    """

    def __init__(self, status_code: int, path: str, body: str = "", *, retry_after: float | None = None) -> None:
        super().__init__(status_code, path, body)
        self.retry_after = retry_after


class MailboxAuthError(MailboxAPIError, ConfigurationError):
    """The remote mailbox API rejected the access token (401)."""


class CursorExpiredError(ScanError):
    """The history cursor is no longer valid on the remote side."""


class DuplicateDocumentError(ScanError):
    """A document already exists for this remote message under the account."""


class ScanJobNotFoundError(ScanError):
    """No scan job with the given id."""


class ScanAlreadyActiveError(ScanError):
    """A non-terminal scan job already exists for the mailbox."""

    def __init__(self, scan_job_id: object) -> None:
        super().__init__(f"Scan job {scan_job_id} is already active")
        self.scan_job_id = scan_job_id


class InvalidScanStateError(ScanError):
    """The requested lifecycle action is not allowed in the job's state."""
