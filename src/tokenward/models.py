"""Conversation records, turn messages and the views returned to callers."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class ConversationKind(StrEnum):
    FREE = "free"
    ANCHORED = "anchored"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


# ---------------------------------------------------------------------------
# Actors and anchors
# ---------------------------------------------------------------------------


class Actor(BaseModel):
    """The authenticated end user a request is made on behalf of."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""
    display_name: str = ""


class Anchor(BaseModel):
    """A previously generated piece of content a conversation is pinned to."""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    content: str
    context: str = ""


class AnchorSnapshot(BaseModel):
    """Anchor text cached on the conversation the first time it is needed."""

    content: str
    context: str = ""


# ---------------------------------------------------------------------------
# Conversation and turn messages
# ---------------------------------------------------------------------------


class Conversation(BaseModel):
    """Shared conversation record guarded by an optimistic version token.

    ``tokens_used`` counts every turn recorded since ``window_started_at``.
    """

    id: str = Field(default_factory=_new_id)
    owner_id: str
    kind: ConversationKind
    anchor_id: str | None = None
    anchor_snapshot: AnchorSnapshot | None = None
    tokens_used: int = 0
    window_started_at: datetime
    created_at: datetime
    version: int = 0

    def window_age_seconds(self, now: datetime) -> float:
        return (now - self.window_started_at).total_seconds()

    def window_elapsed(self, now: datetime, window_seconds: float) -> bool:
        return self.window_age_seconds(now) >= window_seconds

    def reset_window(self, now: datetime) -> None:
        """Zero the counter and restart the window. The start never moves back."""
        self.tokens_used = 0
        if now > self.window_started_at:
            self.window_started_at = now

    def clear_anchor_snapshot(self) -> None:
        self.anchor_snapshot = None


class TurnMessage(BaseModel):
    """One immutable message of a conversation."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    tokens: int
    created_at: datetime
    sequence: int = 0
    # Actor's remaining daily budget once this turn committed; assistant messages only.
    tokens_remaining: int | None = None


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class ConversationView(BaseModel):
    """Conversation summary plus its most recent messages."""

    id: str
    kind: ConversationKind
    anchor_id: str | None = None
    tokens_used: int
    tokens_remaining: int
    daily_tokens_remaining: int
    window_started_at: datetime
    created_at: datetime
    messages: list[TurnMessage] = Field(default_factory=list)


class TurnResult(BaseModel):
    """Outcome of a successful turn."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    message_id: str
    content: str
    input_tokens: int
    output_tokens: int
    tokens_remaining: int
    daily_tokens_remaining: int
    moderated: bool = False

    @property
    def tokens_consumed(self) -> int:
        return self.input_tokens + self.output_tokens
