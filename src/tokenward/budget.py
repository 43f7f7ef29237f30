"""Token budget enforcement at message, conversation and actor-daily scope.

Pre-checks use ``>=`` so that a conversation sitting exactly at its ceiling
is blocked. Reconciliation after generation uses ``>`` so that a turn which
lands exactly on the ceiling is still recorded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from tokenward.config import ChatSettings
from tokenward.errors import BudgetExceeded, ValidationFailure
from tokenward.models import Conversation
from tokenward.tokens import estimate_tokens

logger = logging.getLogger(__name__)


class BudgetEnforcer:
    """Applies the configured ceilings. Stateless apart from its settings."""

    def __init__(
        self,
        settings: ChatSettings,
        estimator: Callable[[str], int] = estimate_tokens,
    ) -> None:
        self._settings = settings
        self._estimate = estimator

    # -- message level -------------------------------------------------------

    def validate_message(self, text: str | None) -> int:
        """Validate a single user message and return its estimated token cost."""
        if text is None or not text.strip():
            raise ValidationFailure("Message must not be empty.")

        max_chars = self._settings.max_chars_per_message
        if len(text) > max_chars:
            logger.info("Message rejected: %d chars > %d", len(text), max_chars)
            raise ValidationFailure(
                f"Your message exceeds the limit of {max_chars} characters "
                f"(found {len(text)}). Please shorten it."
            )

        max_bytes = max_chars * 2
        if len(text.encode("utf-8")) > max_bytes:
            raise ValidationFailure(
                f"Your message exceeds the size limit ({max_bytes} bytes). Please shorten it."
            )

        tokens = self._estimate(text)
        max_tokens = self._settings.max_tokens_per_message
        if tokens > max_tokens:
            logger.info("Message rejected: %d tokens > %d", tokens, max_tokens)
            raise ValidationFailure(
                f"Your message exceeds the limit of {max_tokens} tokens. Please shorten it."
            )
        return tokens

    # -- conversation level --------------------------------------------------

    def _conversation_exceeded(self) -> BudgetExceeded:
        return BudgetExceeded(
            f"This conversation has reached its limit of {self._settings.max_tokens_per_chat} "
            "tokens. Please start a new conversation."
        )

    def check_conversation(self, current: int, additional: int) -> None:
        """Pre-check: reject when the turn would reach or cross the ceiling."""
        if current + additional >= self._settings.max_tokens_per_chat:
            raise self._conversation_exceeded()

    def check_conversation_with_response(
        self, current: int, input_tokens: int, output_tokens: int
    ) -> None:
        """Reconciliation: reject only when the full turn would cross the ceiling."""
        if current + input_tokens + output_tokens > self._settings.max_tokens_per_chat:
            raise self._conversation_exceeded()

    def is_blocked(self, conversation: Conversation) -> bool:
        return conversation.tokens_used >= self._settings.max_tokens_per_chat

    def ensure_not_blocked(self, conversation: Conversation) -> None:
        if self.is_blocked(conversation):
            raise self._conversation_exceeded()

    def conversation_remaining(self, tokens_used: int) -> int:
        return max(0, self._settings.max_tokens_per_chat - tokens_used)

    # -- actor daily ---------------------------------------------------------

    def _daily_exceeded(self) -> BudgetExceeded:
        return BudgetExceeded(
            f"You have reached your daily limit of {self._settings.max_tokens_per_day} "
            "tokens. Please try again later."
        )

    def ensure_daily_allowance(self, used: int) -> None:
        """Reject before any estimation when the allowance is already spent."""
        if used >= self._settings.max_tokens_per_day:
            raise self._daily_exceeded()

    def check_daily(self, used: int, additional: int) -> None:
        if used + additional > self._settings.max_tokens_per_day:
            raise self._daily_exceeded()

    def daily_remaining(self, used: int) -> int:
        return max(0, self._settings.max_tokens_per_day - used)
