"""Error taxonomy for the sync subsystem.

WHAT:
    Typed exceptions raised by the vault, adapters, engines and the webhook
    ingestor, so callers can branch on the failure class instead of parsing
    messages.

WHY:
    - CredentialError  -> refresh attempted, then connection flipped to ERROR
    - AdapterError     -> retried by the job queue, then dead-lettered
    - ValidationError  -> rejected immediately, never retried
    - SignatureError   -> webhook answered 401, never enqueued

REFERENCES:
    - omnisync/services/job_queue.py (retry decision)
    - omnisync/routers/ (HTTPException translation)
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every domain error raised by omnisync."""


class CredentialError(SyncError):
    """Token missing, expired beyond refresh, or unreadable."""

    def __init__(self, message: str, platform: Optional[str] = None):
        super().__init__(message)
        self.platform = platform


class DecryptionFailure(CredentialError):
    """Ciphertext was malformed or failed authentication."""


class NotConnectedError(SyncError):
    """Tenant has no active connection for the requested platform(s)."""


class AdapterError(SyncError):
    """A platform rejected a call or could not be reached.

    `http_status` is None for transport failures (DNS, timeouts, resets).
    """

    def __init__(self, platform: str, http_status: Optional[int], message: str):
        super().__init__(f"[{platform}] {http_status or 'network'}: {message}")
        self.platform = platform
        self.http_status = http_status
        self.message = message

    @property
    def retryable(self) -> bool:
        # Network failures, rate limits and server errors are transient
        if self.http_status is None:
            return True
        return self.http_status == 429 or self.http_status >= 500


class ValidationError(SyncError):
    """Inbound payload failed validation."""


class SignatureError(SyncError):
    """Webhook authenticity could not be established."""


class JobRetryableError(SyncError):
    """Raised by a job handler to ask the queue for another attempt."""


class ConfigurationError(SyncError):
    """A platform integration is missing its app credentials."""
