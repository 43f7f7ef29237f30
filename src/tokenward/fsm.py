"""Finite State Machine for the phases of a conversational turn."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class TurnPhase(StrEnum):
    LOAD = "load"
    VALIDATE_BUDGET = "validate_budget"
    BUILD_CONTEXT = "build_context"
    MODERATE_PRE = "moderate_pre"
    GENERATE = "generate"
    MODERATE_POST = "moderate_post"
    RECONCILE_BUDGET = "reconcile_budget"
    PERSIST = "persist"
    DONE = "done"
    FAILED = "failed"


# Valid phase transitions. A version conflict restarts the turn at LOAD.
_TRANSITIONS: dict[TurnPhase, list[TurnPhase]] = {
    TurnPhase.LOAD: [TurnPhase.VALIDATE_BUDGET, TurnPhase.LOAD],
    TurnPhase.VALIDATE_BUDGET: [TurnPhase.BUILD_CONTEXT],
    TurnPhase.BUILD_CONTEXT: [TurnPhase.MODERATE_PRE, TurnPhase.GENERATE, TurnPhase.LOAD],
    TurnPhase.MODERATE_PRE: [TurnPhase.GENERATE],
    TurnPhase.GENERATE: [TurnPhase.MODERATE_POST],
    TurnPhase.MODERATE_POST: [TurnPhase.RECONCILE_BUDGET],
    TurnPhase.RECONCILE_BUDGET: [TurnPhase.PERSIST],
    TurnPhase.PERSIST: [TurnPhase.DONE, TurnPhase.LOAD],
    TurnPhase.DONE: [],
    TurnPhase.FAILED: [],
}

_TERMINAL = frozenset({TurnPhase.DONE, TurnPhase.FAILED})


class TurnState(BaseModel):
    phase: TurnPhase = TurnPhase.LOAD
    attempt: int = 1
    error: str | None = None
    context: dict[str, Any] = {}

    @property
    def is_terminal(self) -> bool:
        return self.phase in _TERMINAL

    def can_transition(self, target: TurnPhase) -> bool:
        if target is TurnPhase.FAILED:
            return not self.is_terminal
        return target in _TRANSITIONS.get(self.phase, [])

    def transition(self, target: TurnPhase) -> TurnState:
        if not self.can_transition(target):
            raise ValueError(f"Invalid transition: {self.phase} -> {target}")
        attempt = self.attempt + 1 if target is TurnPhase.LOAD else self.attempt
        return TurnState(phase=target, attempt=attempt, context=self.context)

    def fail(self, error: BaseException) -> TurnState:
        if self.is_terminal:
            raise ValueError(f"Invalid transition: {self.phase} -> {TurnPhase.FAILED}")
        return TurnState(
            phase=TurnPhase.FAILED,
            attempt=self.attempt,
            error=f"{type(error).__name__}: {error}",
            context=self.context,
        )
