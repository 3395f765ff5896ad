"""Exception hierarchy raised by the subscription engine.

Callers distinguish local validation problems from processor failures so
that a declined or timed-out processor call is never reported as a bad
request.  Usage denials are *results* (see :class:`talkah_engine.models.usage.Denied`),
not exceptions.
"""

from __future__ import annotations


class SubscriptionEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(SubscriptionEngineError):
    """The request names an unknown plan, interval, feature or a bad amount."""


class PlanNotFoundError(SubscriptionEngineError):
    """No catalog entry exists for the requested plan id."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan '{plan_id}' not found")
        self.plan_id = plan_id


class SubscriptionNotFoundError(SubscriptionEngineError):
    """The user has no subscription state row."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"No subscription state for user '{user_id}'")
        self.user_id = user_id


class StateConflictError(SubscriptionEngineError):
    """The requested transition is not valid in the user's current state."""


class ProcessorError(SubscriptionEngineError):
    """The payment processor failed, declined or timed out.

    Local state is never mutated when this is raised.

    Parameters
    ----------
    message:
        Human-readable description of the failure.
    retryable:
        Whether repeating the same call may succeed (network errors,
        rate limits, timeouts).
    timeout:
        ``True`` when the call exceeded the configured deadline.
    """

    def __init__(self, message: str, *, retryable: bool = False, timeout: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.timeout = timeout


class IntegrityViolation(SubscriptionEngineError):
    """Stored state or an incoming event breaks an engine invariant.

    Examples are an event for an unknown user, a malformed payload, or two
    live pending changes for one user.  Always logged at ERROR.
    """
