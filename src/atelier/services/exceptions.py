"""Service error hierarchy for the generation job engine.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- InfrastructureError: Queue, storage or database transport unavailable (retryable)
- TransientError: Retryable provider errors (network, rate limits, timeouts, malformed responses)
- PermanentError: Non-retryable errors (content policy, authentication, validation)

The worker pool only looks at ``retryable``: a PermanentError fails the queue
entry immediately, everything else is rescheduled under the entry's backoff.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for all service errors."""

    retryable: bool = True
    category: str = "error"

    def to_details(self) -> dict[str, Any]:
        """Structured error detail stored on the job record."""
        return {"category": self.category, "error_type": type(self).__name__}


class InfrastructureError(ServiceError):
    """Infrastructure transport is unavailable.

    Callers must treat this as a retryable infrastructure failure, never as a
    job-logic failure.
    """

    category = "infrastructure"


class QueueUnavailableError(InfrastructureError):
    """Queue transport unavailable (database down, enqueue timed out)."""

    pass


class StorageUnavailableError(InfrastructureError):
    """Object storage could not be reached."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    - Provider response without the expected payload
    """

    category = "transient"


class ProviderNetworkError(TransientError):
    """Connection to the provider failed."""

    pass


class ProviderTimeoutError(TransientError):
    """Provider call exceeded its hard timeout."""

    category = "timeout"


class ProviderUnavailableError(TransientError):
    """Provider answered 429 or 5xx."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    def to_details(self) -> dict[str, Any]:
        details = super().to_details()
        details["status_code"] = self.status_code
        return details


class MalformedResponseError(TransientError):
    """Provider response did not contain the expected payload shape.

    Retryable; ``response_shape`` keeps a summary of the raw response for diagnosis.
    """

    category = "malformed_response"

    def __init__(self, message: str, response_shape: Any = None):
        super().__init__(message)
        self.response_shape = response_shape

    def to_details(self) -> dict[str, Any]:
        details = super().to_details()
        details["response_shape"] = self.response_shape
        return details


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Content policy rejections
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Missing job or input records
    """

    retryable = False
    category = "permanent"


class ContentPolicyError(PermanentError):
    """Provider declined the request on safety grounds.

    The message is the provider's own reason and is surfaced verbatim on the job.
    """

    category = "content_policy"

    def __init__(self, message: str, reason: str | None = None):
        super().__init__(message)
        self.reason = reason

    def to_details(self) -> dict[str, Any]:
        details = super().to_details()
        details["reason"] = self.reason
        return details


class ProviderAuthError(PermanentError):
    """Authentication failure (401, 403) or missing credentials."""

    category = "auth"


class ProviderRequestError(PermanentError):
    """Provider rejected the request itself (4xx other than auth and rate limit)."""

    category = "bad_request"


class JobValidationError(PermanentError):
    """Job record or its inputs are invalid for processing."""

    category = "validation"
