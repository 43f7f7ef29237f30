"""Error taxonomy for the conversation engine.

Every error carries a ``user_message`` that is safe to show to the end user.
``str(exc)`` may hold more detail (status codes, backend text) and is meant
for logs only.
"""

from __future__ import annotations


class TokenwardError(Exception):
    """Base class for all engine errors."""

    default_message = "Your request could not be processed."

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        self.user_message = user_message or message or self.default_message
        super().__init__(message or self.user_message)


# ---------------------------------------------------------------------------
# User-visible, never retried
# ---------------------------------------------------------------------------


class ValidationFailure(TokenwardError):
    """Input rejected before or after generation."""

    default_message = "Your message is not valid."


class BudgetExceeded(ValidationFailure):
    """A message, conversation or daily token ceiling would be crossed."""

    default_message = "The token limit has been reached."


class ModerationRejected(ValidationFailure):
    """The pre-generation safety check flagged the input."""

    default_message = "Sorry, this message cannot be processed because of its content."


class NotFoundFailure(TokenwardError):
    """Referenced conversation or anchor does not exist."""

    default_message = "The requested resource was not found."


class PermissionFailure(TokenwardError):
    """The actor does not own the referenced record."""

    default_message = "You do not have access to this resource."


# ---------------------------------------------------------------------------
# Retried
# ---------------------------------------------------------------------------


class UpstreamServiceFailure(TokenwardError):
    """The generative backend failed or returned an unusable response.

    ``kind`` is a short machine-readable tag (``timeout``, ``connection``,
    ``http_500``, ``too_long``...) used for metrics.
    """

    default_message = "The assistant is temporarily unavailable. Please try again in a moment."

    def __init__(self, message: str | None = None, *, kind: str = "generic") -> None:
        super().__init__(message, user_message=self.default_message)
        self.kind = kind


class ConcurrencyConflict(TokenwardError):
    """A versioned write lost the race against another writer."""

    default_message = "The conversation was updated by another request. Please try again."
