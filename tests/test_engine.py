"""End-to-end tests for ChatEngine — stub backend, in-process stores, fake clock."""

from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from tokenward.config import ChatSettings
from tokenward.engine import ChatEngine
from tokenward.errors import (
    BudgetExceeded,
    ConcurrencyConflict,
    ModerationRejected,
    NotFoundFailure,
    PermissionFailure,
    UpstreamServiceFailure,
    ValidationFailure,
)
from tokenward.escalation import AlertSink, ExpiringStore, FailureEscalator
from tokenward.metrics import ChatMetrics, InMemoryMetricsSink
from tokenward.models import (
    Actor,
    Anchor,
    Conversation,
    ConversationKind,
    MessageRole,
)
from tokenward.moderation import ANCHORED_REJECTION, FREE_REJECTION
from tokenward.prompts import FREE_SYSTEM_PROMPT
from tokenward.provider import ChatRole, StubLLMProvider
from tokenward.store import InMemoryRecordStore, SqliteRecordStore

T0 = datetime(2026, 5, 4, 9, 0, tzinfo=UTC)
ALICE = Actor(id="alice", email="alice@example.com", display_name="Alice")
BOB = Actor(id="bob", email="bob@example.com")

FREE = ConversationKind.FREE
ANCHORED = ConversationKind.ANCHORED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Harness:
    engine: ChatEngine
    provider: StubLLMProvider
    store: InMemoryRecordStore
    clock: FakeClock
    sink: AlertSink
    metrics: InMemoryMetricsSink


def _harness(
    script=(),
    store=None,
    estimator=None,
    provider=None,
    **settings,
) -> Harness:
    store = store if store is not None else InMemoryRecordStore()
    provider = provider if provider is not None else StubLLMProvider(script)
    clock = FakeClock()
    sink = MagicMock(spec=AlertSink)
    metrics = InMemoryMetricsSink()
    cfg = ChatSettings(**settings)
    kwargs = {} if estimator is None else {"estimator": estimator}
    engine = ChatEngine(
        store,
        provider,
        cfg,
        escalator=FailureEscalator(ExpiringStore(), sink, cfg.failure_threshold),
        metrics=ChatMetrics(metrics),
        clock=clock,
        sleep=lambda _: None,
        **kwargs,
    )
    return Harness(engine, provider, store, clock, sink, metrics)


def _anchor(h: Harness, owner: Actor = ALICE) -> Anchor:
    return h.store.save_anchor(
        Anchor(owner_id=owner.id, content="A seed-swap app for neighbours", context="apps")
    )


def _set_tokens(h: Harness, conversation_id: str, tokens: int) -> None:
    conv = h.store.load_conversation(conversation_id)
    conv.tokens_used = tokens
    h.store.save(conv)


def _fixed(cost: int):
    return lambda _text: cost


# ---------------------------------------------------------------------------
# start_or_resume_conversation
# ---------------------------------------------------------------------------


def test_free_conversation_created_then_resumed():
    h = _harness()
    first = h.engine.start_or_resume_conversation(ALICE, FREE)
    second = h.engine.start_or_resume_conversation(ALICE, FREE)
    assert first.id == second.id
    assert first.kind == FREE
    assert first.tokens_used == 0
    assert first.tokens_remaining == 10000
    assert first.daily_tokens_remaining == 10000
    assert first.messages == []


def test_blocked_free_conversation_is_replaced():
    h = _harness()
    first = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, first.id, 10000)
    h.clock.advance(minutes=1)
    second = h.engine.start_or_resume_conversation(ALICE, FREE)
    assert second.id != first.id


def test_full_free_conversation_with_elapsed_window_is_resumed():
    h = _harness()
    first = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, first.id, 10000)
    h.clock.advance(hours=24)
    view = h.engine.start_or_resume_conversation(ALICE, FREE)
    assert view.id == first.id
    assert view.tokens_used == 0
    assert view.tokens_remaining == 10000


def test_free_conversation_rejects_anchor():
    h = _harness()
    with pytest.raises(ValidationFailure):
        h.engine.start_or_resume_conversation(ALICE, FREE, anchor_id="a1")


def test_anchored_conversation_caches_snapshot():
    h = _harness()
    anchor = _anchor(h)
    view = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    stored = h.store.load_conversation(view.id)
    assert view.anchor_id == anchor.id
    assert stored.anchor_snapshot.content == anchor.content
    assert h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id).id == view.id


def test_anchored_requires_existing_owned_anchor():
    h = _harness()
    with pytest.raises(ValidationFailure):
        h.engine.start_or_resume_conversation(ALICE, ANCHORED)
    with pytest.raises(NotFoundFailure):
        h.engine.start_or_resume_conversation(ALICE, ANCHORED, "missing")
    bobs = _anchor(h, owner=BOB)
    with pytest.raises(PermissionFailure):
        h.engine.start_or_resume_conversation(ALICE, ANCHORED, bobs.id)


def test_blocked_anchored_conversation_is_not_replaced():
    h = _harness()
    anchor = _anchor(h)
    view = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    _set_tokens(h, view.id, 10000)
    with pytest.raises(BudgetExceeded):
        h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    h.clock.advance(hours=24)
    assert h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id).id == view.id


def test_snapshot_backfilled_on_resume():
    h = _harness()
    anchor = _anchor(h)
    conv = h.store.create_conversation(
        Conversation(
            owner_id=ALICE.id,
            kind=ANCHORED,
            anchor_id=anchor.id,
            window_started_at=T0,
            created_at=T0,
        )
    )
    h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    assert h.store.load_conversation(conv.id).anchor_snapshot is not None


# ---------------------------------------------------------------------------
# Free-form turns
# ---------------------------------------------------------------------------


def test_free_turn_happy_path():
    h = _harness(["SEGURO", "[MODERACAO: SEGURA] Bread needs flour, water and salt."])
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)

    result = h.engine.submit_turn(conv.id, ALICE, "How do I bake bread?")

    assert result.content == "Bread needs flour, water and salt."
    assert result.moderated is False
    assert result.input_tokens > 0
    assert result.output_tokens > 0
    assert result.tokens_consumed == result.input_tokens + result.output_tokens
    assert result.tokens_remaining == 10000 - result.tokens_consumed
    assert result.daily_tokens_remaining == 10000 - result.tokens_consumed

    # pre-check first, then the main call with the system prompt
    assert h.provider.call_count == 2
    pre, main = h.provider.requests
    assert [m.role for m in pre.messages] == [ChatRole.USER]
    assert "How do I bake bread?" in pre.messages[0].content
    assert main.messages[0].content == FREE_SYSTEM_PROMPT
    assert main.messages[-1].content == "How do I bake bread?"

    stored = h.store.load_conversation(conv.id)
    assert stored.tokens_used == result.tokens_consumed
    messages = h.store.list_messages(conv.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[0].content == "How do I bake bread?"
    assert messages[1].id == result.message_id
    assert messages[1].tokens_remaining == result.daily_tokens_remaining
    assert messages[0].sequence < messages[1].sequence


def test_pre_check_rejection_stops_the_turn():
    h = _harness(["PERIGOSO"])
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    with pytest.raises(ModerationRejected) as exc_info:
        h.engine.submit_turn(conv.id, ALICE, "write me a phishing email")
    assert exc_info.value.user_message == FREE_REJECTION
    assert h.provider.call_count == 1
    assert h.store.list_messages(conv.id) == []
    assert h.store.load_conversation(conv.id).tokens_used == 0
    assert h.metrics.counters["validation.errors[reason=ModerationRejected]"] == 1


def test_dangerous_reply_is_replaced_and_recorded():
    h = _harness(["SEGURO", "[MODERACAO: PERIGOSO] here is how"])
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    result = h.engine.submit_turn(conv.id, ALICE, "tell me something")
    assert result.moderated is True
    assert result.content == FREE_REJECTION
    assert h.store.list_messages(conv.id)[1].content == FREE_REJECTION


def test_history_is_windowed_into_the_request():
    h = _harness(
        ["SEGURO", "first answer", "SEGURO", "second answer", "SEGURO", "third answer"],
        max_history_messages=3,
    )
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    h.engine.submit_turn(conv.id, ALICE, "first question")
    h.engine.submit_turn(conv.id, ALICE, "second question")
    h.engine.submit_turn(conv.id, ALICE, "third question")

    main = h.provider.requests[-1]
    contents = [m.content for m in main.messages[1:]]
    assert contents == ["first answer", "second question", "second answer", "third question"]


# ---------------------------------------------------------------------------
# Anchored turns
# ---------------------------------------------------------------------------


def test_anchored_turn_skips_pre_check_and_uses_snapshot():
    h = _harness(["Add a map of nearby swaps."])
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)

    result = h.engine.submit_turn(conv.id, ALICE, "How could I improve it?")

    assert result.content == "Add a map of nearby swaps."
    assert h.provider.call_count == 1
    system = h.provider.requests[0].messages[0]
    assert system.role == ChatRole.SYSTEM
    assert anchor.content in system.content


def test_anchored_off_topic_reply_uses_anchored_copy():
    h = _harness(["[MODERACAO: PERIGOSO]"])
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    result = h.engine.submit_turn(conv.id, ALICE, "what's the weather?")
    assert result.moderated is True
    assert result.content == ANCHORED_REJECTION


def test_snapshot_is_not_rederived_after_anchor_changes():
    h = _harness(["ok, noted", "still fine"])
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    h.engine.submit_turn(conv.id, ALICE, "first")
    h.store.save_anchor(anchor.model_copy(update={"content": "Rewritten content"}))
    h.engine.submit_turn(conv.id, ALICE, "second")
    assert anchor.content in h.provider.requests[-1].messages[0].content


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


def test_unknown_conversation():
    h = _harness()
    with pytest.raises(NotFoundFailure):
        h.engine.submit_turn("nope", ALICE, "hi")


def test_other_actor_cannot_post():
    h = _harness()
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    with pytest.raises(PermissionFailure):
        h.engine.submit_turn(conv.id, BOB, "hi")
    with pytest.raises(PermissionFailure):
        h.engine.get_conversation(conv.id, BOB)
    assert h.provider.call_count == 0


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


def test_message_validation_happens_before_generation():
    h = _harness()
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    with pytest.raises(ValidationFailure, match="characters"):
        h.engine.submit_turn(conv.id, ALICE, "x" * 1001)
    with pytest.raises(ValidationFailure, match="empty"):
        h.engine.submit_turn(conv.id, ALICE, "   ")
    assert h.provider.call_count == 0


def test_daily_allowance_rejects_before_generation():
    h = _harness(estimator=_fixed(10))
    anchor = _anchor(h)
    earlier = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    _set_tokens(h, earlier.id, 9995)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)

    with pytest.raises(BudgetExceeded, match="daily limit"):
        h.engine.submit_turn(conv.id, ALICE, "a ten token message")
    assert h.provider.call_count == 0
    assert h.store.list_messages(conv.id) == []


def test_daily_allowance_fully_spent():
    h = _harness()
    anchor = _anchor(h)
    earlier = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    _set_tokens(h, earlier.id, 10000)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    assert conv.daily_tokens_remaining == 0
    with pytest.raises(BudgetExceeded, match="daily limit"):
        h.engine.submit_turn(conv.id, ALICE, "hi")


def test_assistant_message_snapshots_daily_remaining():
    h = _harness(["SEGURO", "fine"], estimator=_fixed(10))
    earlier = h.engine.start_or_resume_conversation(ALICE, ANCHORED, _anchor(h).id)
    _set_tokens(h, earlier.id, 4000)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)

    result = h.engine.submit_turn(conv.id, ALICE, "hello")

    assert result.tokens_remaining == 10000 - 20
    assert result.daily_tokens_remaining == 10000 - 4000 - 20
    user, assistant = h.store.list_messages(conv.id)
    assert user.tokens_remaining is None
    assert assistant.tokens_remaining == result.daily_tokens_remaining


def test_daily_usage_ignores_other_actors_and_old_windows():
    h = _harness(["SEGURO", "fine"], estimator=_fixed(10))
    anchor = _anchor(h, owner=BOB)
    bobs = h.engine.start_or_resume_conversation(BOB, ANCHORED, anchor.id)
    _set_tokens(h, bobs.id, 10000)
    h.store.create_conversation(
        Conversation(
            owner_id=ALICE.id,
            kind=ANCHORED,
            anchor_id="old",
            tokens_used=9999,
            window_started_at=T0 - timedelta(hours=25),
            created_at=T0 - timedelta(hours=25),
        )
    )
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    assert h.engine.submit_turn(conv.id, ALICE, "hello").content == "fine"


def test_blocked_conversation_rejected_without_generation():
    h = _harness()
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, conv.id, 10000)
    h.clock.advance(hours=23, minutes=59)
    with pytest.raises(BudgetExceeded, match="start a new conversation"):
        h.engine.submit_turn(conv.id, ALICE, "hi")
    assert h.provider.call_count == 0


def test_window_exactly_elapsed_resets_counter():
    h = _harness(["SEGURO", "welcome back"])
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, conv.id, 10000)
    h.clock.advance(hours=24)

    result = h.engine.submit_turn(conv.id, ALICE, "hello again")

    stored = h.store.load_conversation(conv.id)
    assert result.content == "welcome back"
    assert stored.tokens_used == result.tokens_consumed
    assert stored.window_started_at == T0 + timedelta(hours=24)


def test_conversation_pre_check_uses_message_cost():
    h = _harness(estimator=_fixed(40), max_tokens_per_chat=100)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, conv.id, 60)
    with pytest.raises(BudgetExceeded):
        h.engine.submit_turn(conv.id, ALICE, "forty tokens")
    assert h.provider.call_count == 0


def test_reconciliation_allows_landing_on_ceiling():
    h = _harness(["SEGURO", "reply"], estimator=_fixed(40), max_tokens_per_chat=100)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, conv.id, 20)
    result = h.engine.submit_turn(conv.id, ALICE, "question")
    assert result.tokens_remaining == 0
    assert h.store.load_conversation(conv.id).tokens_used == 100


def test_reconciliation_rejects_overshoot_after_generation():
    h = _harness(["SEGURO", "reply"], estimator=_fixed(40), max_tokens_per_chat=100)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    _set_tokens(h, conv.id, 21)
    with pytest.raises(BudgetExceeded):
        h.engine.submit_turn(conv.id, ALICE, "question")
    assert h.provider.call_count == 2
    assert h.store.list_messages(conv.id) == []
    assert h.store.load_conversation(conv.id).tokens_used == 21


# ---------------------------------------------------------------------------
# Upstream failures and escalation
# ---------------------------------------------------------------------------


def _down(n: int) -> list[UpstreamServiceFailure]:
    return [UpstreamServiceFailure("connection refused", kind="connection") for _ in range(n)]


def test_exhausted_generation_leaves_no_partial_turn():
    h = _harness(_down(3))
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    with pytest.raises(UpstreamServiceFailure) as exc_info:
        h.engine.submit_turn(conv.id, ALICE, "hello")
    assert "temporarily unavailable" in exc_info.value.user_message
    assert h.provider.call_count == 3
    assert h.store.list_messages(conv.id) == []
    assert h.store.load_conversation(conv.id).tokens_used == 0


def test_four_failed_turns_escalate_once():
    h = _harness(_down(12) + ["back online"])
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    for _ in range(4):
        with pytest.raises(UpstreamServiceFailure):
            h.engine.submit_turn(conv.id, ALICE, "hello")
    h.sink.notify.assert_called_once_with(ALICE, 4)
    assert h.engine.submit_turn(conv.id, ALICE, "hello").content == "back online"


def test_success_resets_failure_streak():
    h = _harness(_down(9) + ["ok then"] + _down(3))
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    for _ in range(3):
        with pytest.raises(UpstreamServiceFailure):
            h.engine.submit_turn(conv.id, ALICE, "hello")
    h.engine.submit_turn(conv.id, ALICE, "hello")
    with pytest.raises(UpstreamServiceFailure):
        h.engine.submit_turn(conv.id, ALICE, "hello")
    h.sink.notify.assert_not_called()


def test_free_chat_failures_escalate_despite_successful_pre_check():
    script: list = []
    for _ in range(4):
        script += ["SEGURO", *_down(3)]
    h = _harness(script)
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    for _ in range(4):
        with pytest.raises(UpstreamServiceFailure):
            h.engine.submit_turn(conv.id, ALICE, "hello")
    h.sink.notify.assert_called_once_with(ALICE, 4)


def test_validation_failures_never_escalate():
    h = _harness()
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    for _ in range(5):
        with pytest.raises(ValidationFailure):
            h.engine.submit_turn(conv.id, ALICE, "")
    h.sink.notify.assert_not_called()


def test_empty_reply_after_markers_is_upstream_failure():
    h = _harness(["[MODERACAO: SEGURA]"])
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    with pytest.raises(UpstreamServiceFailure):
        h.engine.submit_turn(conv.id, ALICE, "hello")
    assert h.store.list_messages(conv.id) == []


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class RacingStore(InMemoryRecordStore):
    """Lets another writer win the first *losses* commits."""

    def __init__(self, losses: int) -> None:
        super().__init__()
        self.losses = losses

    def append_messages(self, conversation, messages):
        if self.losses > 0:
            self.losses -= 1
            rival = self.load_conversation(conversation.id)
            self.save(rival)
        return super().append_messages(conversation, messages)


def test_conflict_restarts_turn_and_commits():
    store = RacingStore(losses=2)
    h = _harness(["r1", "r2", "r3"], store=store)
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)

    result = h.engine.submit_turn(conv.id, ALICE, "hello")

    assert result.content == "r3"
    assert h.provider.call_count == 3
    messages = store.list_messages(conv.id)
    assert len(messages) == 2
    assert store.load_conversation(conv.id).tokens_used == result.tokens_consumed


def test_conflict_exhaustion_is_budget_failure():
    store = RacingStore(losses=3)
    h = _harness(["r1", "r2", "r3"], store=store)
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)

    with pytest.raises(BudgetExceeded, match="another request") as exc_info:
        h.engine.submit_turn(conv.id, ALICE, "hello")
    assert isinstance(exc_info.value.__cause__, ConcurrencyConflict)
    assert store.list_messages(conv.id) == []
    assert store.load_conversation(conv.id).tokens_used == 0


class InterleavingProvider(StubLLMProvider):
    """Runs *before_first_reply* while the first generation is in flight."""

    def __init__(self, before_first_reply) -> None:
        super().__init__()
        self._hook = before_first_reply

    def chat(self, request, timeout):
        hook, self._hook = self._hook, None
        if hook is not None:
            hook()
        return super().chat(request, timeout)


def test_daily_ceiling_rechecked_after_another_conversation_commits():
    holder: dict = {}

    def commit_on_other_conversation():
        h = holder["h"]
        holder["other_result"] = h.engine.submit_turn(holder["other"], ALICE, "question b")

    provider = InterleavingProvider(commit_on_other_conversation)
    h = _harness(provider=provider, estimator=_fixed(30), max_tokens_per_day=100)
    holder["h"] = h
    first = h.engine.start_or_resume_conversation(ALICE, ANCHORED, _anchor(h).id)
    holder["other"] = h.engine.start_or_resume_conversation(ALICE, ANCHORED, _anchor(h).id).id

    with pytest.raises(BudgetExceeded, match="daily limit"):
        h.engine.submit_turn(first.id, ALICE, "question a")

    assert holder["other_result"].tokens_consumed == 60
    assert h.store.list_messages(first.id) == []
    assert h.store.load_conversation(first.id).tokens_used == 0
    total = sum(c.tokens_used for c in h.store.list_conversations(ALICE.id))
    assert total == 60
    assert total <= 100


def test_parallel_turns_keep_counter_consistent():
    h = _harness(estimator=_fixed(5))
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    start = threading.Barrier(2)
    errors: list[BaseException] = []

    def worker(text: str) -> None:
        start.wait()
        try:
            h.engine.submit_turn(conv.id, ALICE, text)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(f"question {i}",)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    messages = h.store.list_messages(conv.id)
    assert [m.sequence for m in messages] == [1, 2, 3, 4]
    assert h.store.load_conversation(conv.id).tokens_used == sum(m.tokens for m in messages)


# ---------------------------------------------------------------------------
# Views and paging
# ---------------------------------------------------------------------------


def test_view_lists_recent_messages():
    h = _harness(max_initial_messages=4)
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    for i in range(3):
        h.provider.enqueue(f"answer {i}")
        h.engine.submit_turn(conv.id, ALICE, f"question {i}")
        h.clock.advance(minutes=1)

    view = h.engine.get_conversation(conv.id, ALICE)
    assert [m.content for m in view.messages] == [
        "question 1",
        "answer 1",
        "question 2",
        "answer 2",
    ]
    assert view.tokens_remaining == 10000 - view.tokens_used


def test_list_older_messages_pages_backwards():
    h = _harness()
    anchor = _anchor(h)
    conv = h.engine.start_or_resume_conversation(ALICE, ANCHORED, anchor.id)
    for i in range(12):
        h.provider.enqueue(f"answer {i}")
        h.engine.submit_turn(conv.id, ALICE, f"question {i}")
        h.clock.advance(minutes=1)

    page = h.engine.list_older_messages(conv.id, ALICE)
    assert len(page) == 20
    assert page[-1].content == "answer 11"

    before = T0 + timedelta(minutes=2)
    older = h.engine.list_older_messages(conv.id, ALICE, before=before)
    assert [m.content for m in older] == ["question 0", "answer 0", "question 1", "answer 1"]

    assert len(h.engine.list_older_messages(conv.id, ALICE, limit=0)) == 1
    assert len(h.engine.list_older_messages(conv.id, ALICE, limit=500)) == 24

    with pytest.raises(PermissionFailure):
        h.engine.list_older_messages(conv.id, BOB)


# ---------------------------------------------------------------------------
# Metrics and persistence backends
# ---------------------------------------------------------------------------


def test_successful_turn_records_metrics():
    h = _harness(["SEGURO", "fine"])
    conv = h.engine.start_or_resume_conversation(ALICE, FREE)
    h.engine.submit_turn(conv.id, ALICE, "hello")
    assert h.metrics.counters["messages.sent[kind=free]"] == 1
    assert h.metrics.counters["tokens.input[kind=free]"] > 0
    assert "turn.processing[kind=free]" in h.metrics.timings


def test_turn_against_sqlite_store():
    with tempfile.TemporaryDirectory() as td:
        store = SqliteRecordStore(os.path.join(td, "chat.db"))
        h = _harness(["SEGURO", "stored in sqlite"], store=store)
        conv = h.engine.start_or_resume_conversation(ALICE, FREE)
        result = h.engine.submit_turn(conv.id, ALICE, "hello")
        assert result.content == "stored in sqlite"
        assert [m.content for m in store.list_messages(conv.id)] == ["hello", "stored in sqlite"]
        assert store.load_conversation(conv.id).tokens_used == result.tokens_consumed
        store.close()
