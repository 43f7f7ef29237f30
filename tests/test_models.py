"""Tests for the conversation record helpers."""

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from tokenward.models import (
    AnchorSnapshot,
    Conversation,
    ConversationKind,
    MessageRole,
    TurnMessage,
    TurnResult,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
DAY = 24 * 3600


def _conv(**kwargs) -> Conversation:
    return Conversation(
        owner_id="u1",
        kind=ConversationKind.FREE,
        window_started_at=T0,
        created_at=T0,
        **kwargs,
    )


def test_window_elapses_at_exactly_the_boundary():
    conv = _conv()
    assert not conv.window_elapsed(T0 + timedelta(hours=23, minutes=59, seconds=59), DAY)
    assert conv.window_elapsed(T0 + timedelta(hours=24), DAY)


def test_reset_window_zeroes_counter():
    conv = _conv(tokens_used=900)
    later = T0 + timedelta(hours=30)
    conv.reset_window(later)
    assert conv.tokens_used == 0
    assert conv.window_started_at == later


def test_reset_window_never_moves_start_backwards():
    conv = _conv(tokens_used=5)
    conv.reset_window(T0 - timedelta(minutes=1))
    assert conv.window_started_at == T0


def test_clear_anchor_snapshot():
    conv = _conv(anchor_snapshot=AnchorSnapshot(content="c"))
    conv.clear_anchor_snapshot()
    assert conv.anchor_snapshot is None


def test_turn_message_is_frozen():
    msg = TurnMessage(
        conversation_id="c", role=MessageRole.USER, content="hi", tokens=1, created_at=T0
    )
    with pytest.raises(ValidationError):
        msg.content = "changed"


def test_turn_result_tokens_consumed():
    result = TurnResult(
        conversation_id="c",
        message_id="m",
        content="x",
        input_tokens=12,
        output_tokens=30,
        tokens_remaining=9958,
        daily_tokens_remaining=9958,
    )
    assert result.tokens_consumed == 42
