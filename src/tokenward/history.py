"""History windowing — selects the recent turns that fit a context budget."""

from __future__ import annotations

from collections.abc import Callable, Sequence

from tokenward.models import TurnMessage
from tokenward.tokens import estimate_tokens


class HistoryWindower:
    """Keeps the newest messages whose cumulative estimated cost fits a budget.

    Messages with blank content never reach the backend and are skipped.
    The walk goes newest to oldest and stops at the first message that would
    overflow the budget, so the kept window is always a contiguous suffix.
    """

    def __init__(
        self,
        max_count: int,
        max_tokens: int,
        estimator: Callable[[str], int] = estimate_tokens,
    ) -> None:
        if max_count < 0 or max_tokens < 0:
            msg = "max_count and max_tokens must be non-negative"
            raise ValueError(msg)
        self._max_count = max_count
        self._max_tokens = max_tokens
        self._estimate = estimator

    def window(self, messages: Sequence[TurnMessage]) -> list[TurnMessage]:
        """Return the kept messages in chronological order."""
        usable = [m for m in messages if m.content and m.content.strip()]
        if not usable or self._max_count == 0:
            return []

        recent = usable[-self._max_count :]
        kept: list[TurnMessage] = []
        total = 0
        for message in reversed(recent):
            cost = self._estimate(message.content)
            if total + cost > self._max_tokens:
                break
            total += cost
            kept.append(message)

        kept.reverse()
        return kept
