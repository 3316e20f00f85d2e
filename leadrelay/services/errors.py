"""
Exception hierarchy for the delivery pipeline and its caches.

Senders raise these instead of returning error dicts so the worker can
classify the failure (transient vs permanent) before deciding on a retry.
"""
from typing import Optional


class DeliveryError(Exception):
    """Base class for failures raised by channel senders."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code


class TransientDeliveryError(DeliveryError):
    """Network timeout, provider 5xx or throttling - worth retrying."""


class RateLimitExceeded(TransientDeliveryError):
    """Channel rate limiter rejected the attempt."""

    def __init__(self, channel: str, retry_after: Optional[float] = None):
        super().__init__(f"Rate limit exceeded for channel {channel}", error_code="rate_limited")
        self.channel = channel
        self.retry_after = retry_after


class PermanentDeliveryError(DeliveryError):
    """Validation failure, auth rejection or bad destination - never retried."""


class InvalidRecipientError(PermanentDeliveryError):
    pass


class CredentialsMissingError(PermanentDeliveryError):
    pass


class QueueUnavailable(Exception):
    """The shared job store cannot be reached; the submission was not accepted."""


class UnknownQueueError(ValueError):
    pass


class JobNotFoundError(LookupError):
    pass


class InvalidTransitionError(Exception):
    """Raised when a job would move against its state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id[:8]} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class CredentialEncryptionError(Exception):
    """Token material could not be encrypted; nothing was stored."""
