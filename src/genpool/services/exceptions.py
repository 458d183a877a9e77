"""Scheduler error hierarchy.

This module defines the exception hierarchy for scheduler-level errors:
- SchedulerError: Base for all scheduler errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)

Provider and storage errors derive from both axes so callers can catch by
layer (ProviderError, StorageBackendError) or by retry class.
"""


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""

    pass


class TransientError(SchedulerError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts and connection resets
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(SchedulerError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


# Provider errors
class TransientNetworkError(TransientError):
    """Network-level failure talking to the provider (timeout, reset, DNS)."""

    pass


class ProviderError(SchedulerError):
    """Provider rejected the request or returned an unusable response."""

    pass


class AuthenticationError(ProviderError, PermanentError):
    """Provider rejected the credential (unauthorized / invalid token)."""

    pass


class ProviderTransientError(ProviderError, TransientError):
    """Provider reported a known-transient failure (high traffic, timeout, deadline)."""

    pass


class ProviderTerminalError(ProviderError, PermanentError):
    """Provider reported a failure that will not succeed on retry."""

    pass


# Token pool errors
class ResourceExhausted(SchedulerError):
    """No active provider tokens are available."""

    pass


class InvalidRotationRequest(SchedulerError, ValueError):
    """Round-robin reservation requested with a non-positive count or pool size."""

    pass


# Storage errors
class StorageBackendError(SchedulerError):
    """Base exception for storage backend errors.

    Also raised by the fallback chain when every backend, including the
    in-memory cache, failed.
    """

    pass


class StorageRateLimitError(StorageBackendError, TransientError):
    """Rate limit exceeded (429)."""

    pass


class StorageNetworkError(StorageBackendError, TransientError):
    """Network timeout or service unavailable."""

    pass


class StorageAuthError(StorageBackendError, PermanentError):
    """Authentication failure (401, 403)."""

    pass


class StorageValidationError(StorageBackendError, PermanentError):
    """Bad request (400) or artifact rejected by the backend."""

    pass


# Queue errors
class StuckStateError(SchedulerError):
    """A tenant processing loop exceeded the maximum processing duration."""

    pass


class BatchTooLargeError(SchedulerError, ValueError):
    """Batch exceeds the tenant's maximum prompts per batch."""

    pass
