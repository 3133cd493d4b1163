"""Error hierarchy for admission, lifecycle and provider operations.

This module defines the exception hierarchy for service-level errors:
- QueueError: Base for all queue/metering errors surfaced to callers
- UpstreamProviderError: Failures reported by the AI generation provider
- BookkeepingInvariantViolation: A counter update missed its precondition
"""


class QueueError(Exception):
    """Base exception for all queue errors."""

    pass


class InsufficientTickets(QueueError):
    """User's available balance does not cover the ticket cost."""

    def __init__(self, user_id: int, required: int):
        self.user_id = user_id
        self.required = required
        super().__init__(f"Insufficient tickets. Need {required} tickets.")


class InvalidTransition(QueueError):
    """Raised when attempting a status change the state machine does not allow."""

    pass


class NotFound(QueueError):
    """Unknown queue item, model or concurrency limit."""

    pass


class InvalidParameters(QueueError):
    """Request parameters cannot be priced or validated."""

    pass


class LimitAlreadyExists(QueueError):
    """Concurrency limit for the model is already configured."""

    pass


class BookkeepingInvariantViolation(Exception):
    """A ticket or concurrency counter would have gone negative.

    Raised by repositories when a guarded counter update matches no row.
    Services catch it, clamp the counter at zero and log; it never reaches callers.
    """

    pass


class UpstreamProviderError(Exception):
    """Base class for categorized generation provider errors."""

    pass


class TransientError(UpstreamProviderError):
    """Transient error (network, rate limits, service unavailability).

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class ContentPolicyError(UpstreamProviderError):
    """Prompt or output rejected by the provider's content policy."""

    pass


class PermanentError(UpstreamProviderError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Unexpected output format
    """

    pass
