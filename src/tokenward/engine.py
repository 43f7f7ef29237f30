"""Chat engine — drives a conversational turn through budgets, moderation and persistence.

A turn walks the phases of :class:`~tokenward.fsm.TurnPhase`. Every write
to the conversation record is version-checked; when another request wins
the race the whole turn restarts from LOAD, up to
``settings.max_commit_attempts`` times. The backend is never called while
a store lock is held.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from tokenward import prompts
from tokenward.budget import BudgetEnforcer
from tokenward.config import ChatSettings
from tokenward.errors import (
    BudgetExceeded,
    ConcurrencyConflict,
    NotFoundFailure,
    PermissionFailure,
    UpstreamServiceFailure,
    ValidationFailure,
)
from tokenward.escalation import ExpiringStore, FailureEscalator, LoggingAlertSink
from tokenward.fsm import TurnPhase, TurnState
from tokenward.generation import GenerationClient, RetryingGenerator
from tokenward.history import HistoryWindower
from tokenward.metrics import ChatMetrics
from tokenward.models import (
    Actor,
    AnchorSnapshot,
    Conversation,
    ConversationKind,
    ConversationView,
    MessageRole,
    TurnMessage,
    TurnResult,
)
from tokenward.moderation import ModerationGate
from tokenward.provider import ChatMessage, LLMProvider
from tokenward.store import RecordStore
from tokenward.telemetry import trace_turn
from tokenward.tokens import estimate_tokens

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _Turn:
    conversation_id: str
    actor: Actor
    text: str
    state: TurnState = field(default_factory=TurnState)

    def advance(self, phase: TurnPhase) -> None:
        self.state = self.state.transition(phase)

    @property
    def log_context(self) -> str:
        return (
            f"conversation={self.conversation_id} actor={self.actor.id} "
            f"attempt={self.state.attempt}"
        )


class ChatEngine:
    """Entry point for starting conversations and submitting turns."""

    def __init__(
        self,
        store: RecordStore,
        provider: LLMProvider,
        settings: ChatSettings | None = None,
        *,
        escalator: FailureEscalator | None = None,
        metrics: ChatMetrics | None = None,
        estimator: Callable[[str], int] = estimate_tokens,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or ChatSettings()
        self._store = store
        self._metrics = metrics or ChatMetrics()
        self._estimate = estimator
        self._clock = clock
        self._budget = BudgetEnforcer(self._settings, estimator)
        self._windower = HistoryWindower(
            self._settings.max_history_messages,
            self._settings.max_history_tokens,
            estimator,
        )
        self._gate = ModerationGate()
        self._generator = RetryingGenerator.from_settings(
            GenerationClient(provider, self._settings, self._metrics),
            self._settings,
            sleep=sleep,
        )
        self._escalator = escalator or FailureEscalator(
            ExpiringStore(self._settings.failure_ttl_seconds),
            LoggingAlertSink(),
            self._settings.failure_threshold,
        )

    @property
    def settings(self) -> ChatSettings:
        return self._settings

    @property
    def budget(self) -> BudgetEnforcer:
        return self._budget

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_or_resume_conversation(
        self,
        actor: Actor,
        kind: ConversationKind,
        anchor_id: str | None = None,
    ) -> ConversationView:
        """Return the actor's usable conversation of *kind*, creating one if needed."""
        now = self._clock()
        if kind is ConversationKind.ANCHORED:
            conversation = self._resume_anchored(actor, anchor_id, now)
        else:
            if anchor_id is not None:
                msg = "Free-form conversations cannot reference an anchor."
                raise ValidationFailure(msg)
            conversation = self._resume_free(actor, now)
        return self._view(conversation, actor, now)

    def _resume_free(self, actor: Actor, now: datetime) -> Conversation:
        existing = self._store.find_conversation(actor.id, ConversationKind.FREE)
        if existing is not None:
            if self._window_elapsed(existing, now) or not self._budget.is_blocked(existing):
                return existing
            logger.info(
                "Free conversation %s is full; starting a new one for actor %s",
                existing.id,
                actor.id,
            )
        return self._create(actor, ConversationKind.FREE, now)

    def _resume_anchored(self, actor: Actor, anchor_id: str | None, now: datetime) -> Conversation:
        if not anchor_id:
            msg = "An anchor is required for anchored conversations."
            raise ValidationFailure(msg)
        anchor = self._store.load_anchor(anchor_id)
        if anchor is None:
            raise NotFoundFailure(f"Anchor {anchor_id} not found")
        if anchor.owner_id != actor.id:
            raise PermissionFailure(f"Actor {actor.id} does not own anchor {anchor_id}")

        snapshot = AnchorSnapshot(content=anchor.content, context=anchor.context)
        existing = self._store.find_conversation(actor.id, ConversationKind.ANCHORED, anchor_id)
        if existing is None:
            return self._create(actor, ConversationKind.ANCHORED, now, anchor_id, snapshot)

        if not self._window_elapsed(existing, now):
            self._budget.ensure_not_blocked(existing)
        if existing.anchor_snapshot is None:
            existing.anchor_snapshot = snapshot
            existing = self._store.save(existing)
        return existing

    def _create(
        self,
        actor: Actor,
        kind: ConversationKind,
        now: datetime,
        anchor_id: str | None = None,
        snapshot: AnchorSnapshot | None = None,
    ) -> Conversation:
        conversation = self._store.create_conversation(
            Conversation(
                owner_id=actor.id,
                kind=kind,
                anchor_id=anchor_id,
                anchor_snapshot=snapshot,
                window_started_at=now,
                created_at=now,
            )
        )
        logger.info("Created %s conversation %s for actor %s", kind, conversation.id, actor.id)
        return conversation

    def get_conversation(self, conversation_id: str, actor: Actor) -> ConversationView:
        conversation = self._load_owned(conversation_id, actor)
        return self._view(conversation, actor, self._clock())

    def list_older_messages(
        self,
        conversation_id: str,
        actor: Actor,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[TurnMessage]:
        """Page backwards through history; oldest first within the page."""
        self._load_owned(conversation_id, actor)
        size = DEFAULT_PAGE_SIZE if limit is None else max(1, min(limit, MAX_PAGE_SIZE))
        return self._store.messages_before(conversation_id, before or self._clock(), size)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def submit_turn(self, conversation_id: str, actor: Actor, text: str) -> TurnResult:
        """Run one user turn end to end and return the assistant reply."""
        started = time.perf_counter()
        turn = _Turn(conversation_id, actor, text)
        attempts = self._settings.max_commit_attempts

        with trace_turn(conversation_id, actor.id):
            while True:
                try:
                    result = self._attempt(turn)
                    break
                except ConcurrencyConflict as exc:
                    phase = turn.state.phase
                    logger.warning("Version conflict in %s [%s]", phase, turn.log_context)
                    if turn.state.attempt >= attempts:
                        turn.state = turn.state.fail(exc)
                        logger.error("Giving up after %d attempts [%s]", attempts, turn.log_context)
                        msg = "Conversation was updated by another request. Please try again."
                        raise BudgetExceeded(msg) from exc
                    turn.advance(TurnPhase.LOAD)
                except ValidationFailure as exc:
                    self._metrics.record_validation_error(type(exc).__name__)
                    phase = turn.state.phase
                    logger.info("Turn rejected in %s [%s]: %s", phase, turn.log_context, exc)
                    turn.state = turn.state.fail(exc)
                    raise
                except Exception as exc:
                    phase = turn.state.phase
                    logger.warning("Turn failed in %s [%s]: %s", phase, turn.log_context, exc)
                    if not turn.state.is_terminal:
                        turn.state = turn.state.fail(exc)
                    raise

        kind = turn.state.context["kind"]
        self._metrics.record_processing_time((time.perf_counter() - started) * 1000.0, kind)
        self._metrics.record_message_sent(kind)
        return result

    def _attempt(self, turn: _Turn) -> TurnResult:
        now = self._clock()
        actor = turn.actor

        # LOAD
        conversation = self._load_owned(turn.conversation_id, actor, for_update=True)
        if self._window_elapsed(conversation, now):
            logger.info("Rolling window elapsed; resetting [%s]", turn.log_context)
            conversation.reset_window(now)
            conversation = self._store.save(conversation)
        kind = conversation.kind
        turn.state.context["kind"] = kind.value

        # VALIDATE_BUDGET
        turn.advance(TurnPhase.VALIDATE_BUDGET)
        daily_used = self._daily_usage(actor, conversation, now)
        self._budget.ensure_not_blocked(conversation)
        self._budget.ensure_daily_allowance(daily_used)
        input_tokens = self._budget.validate_message(turn.text)
        self._budget.check_conversation(conversation.tokens_used, input_tokens)
        self._budget.check_daily(daily_used, input_tokens)

        # BUILD_CONTEXT
        turn.advance(TurnPhase.BUILD_CONTEXT)
        conversation = self._ensure_snapshot(conversation)
        history = self._windower.window(self._store.list_messages(conversation.id))
        system_prompt = prompts.system_prompt(kind, conversation.anchor_snapshot)
        user_prompt = prompts.sanitize_for_prompt(turn.text)

        if kind is ConversationKind.FREE:
            turn.advance(TurnPhase.MODERATE_PRE)
            self._gate.pre_check(
                turn.text,
                kind,
                lambda prompt: self._generate(turn, None, [], prompt, count_success=False),
            )

        # GENERATE
        turn.advance(TurnPhase.GENERATE)
        raw = self._generate(turn, system_prompt, prompts.history_messages(history), user_prompt)

        # MODERATE_POST
        turn.advance(TurnPhase.MODERATE_POST)
        try:
            verdict = self._gate.normalize(raw, kind)
        except UpstreamServiceFailure:
            self._escalator.record_failure(actor)
            raise
        output_tokens = self._estimate(verdict.content)

        # RECONCILE_BUDGET
        turn.advance(TurnPhase.RECONCILE_BUDGET)
        self._budget.check_conversation_with_response(
            conversation.tokens_used, input_tokens, output_tokens
        )
        # Other conversations of the actor may have committed during generation.
        daily_used = self._daily_usage(actor, conversation, self._clock())
        self._budget.check_daily(daily_used, input_tokens + output_tokens)

        # PERSIST
        turn.advance(TurnPhase.PERSIST)
        consumed = input_tokens + output_tokens
        conversation.tokens_used += consumed
        remaining = self._budget.conversation_remaining(conversation.tokens_used)
        daily_remaining = self._budget.daily_remaining(daily_used + consumed)
        user_message = TurnMessage(
            conversation_id=conversation.id,
            role=MessageRole.USER,
            content=turn.text,
            tokens=input_tokens,
            created_at=now,
        )
        assistant_message = TurnMessage(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            content=verdict.content,
            tokens=output_tokens,
            created_at=max(now, self._clock()),
            tokens_remaining=daily_remaining,
        )
        conversation = self._store.append_messages(conversation, [user_message, assistant_message])
        turn.advance(TurnPhase.DONE)

        self._metrics.record_token_usage(input_tokens, output_tokens, kind.value)
        return TurnResult(
            conversation_id=conversation.id,
            message_id=assistant_message.id,
            content=verdict.content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            tokens_remaining=remaining,
            daily_tokens_remaining=daily_remaining,
            moderated=verdict.rejected,
        )

    def _generate(
        self,
        turn: _Turn,
        system_prompt: str | None,
        history: list[ChatMessage],
        user_prompt: str,
        *,
        count_success: bool = True,
    ) -> str:
        """Generate with retries, feeding the outcome to the escalator.

        Only the main generation resets the failure streak; a successful
        classification call says nothing about the reply path.
        """
        try:
            raw = self._generator.generate(
                system_prompt, history, user_prompt, log_context=turn.log_context
            )
        except UpstreamServiceFailure:
            self._escalator.record_failure(turn.actor)
            raise
        if count_success:
            self._escalator.record_success(turn.actor)
        return raw

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_owned(
        self, conversation_id: str, actor: Actor, *, for_update: bool = False
    ) -> Conversation:
        if for_update:
            conversation = self._store.load_conversation_for_update(conversation_id)
        else:
            conversation = self._store.load_conversation(conversation_id)
        if conversation is None:
            raise NotFoundFailure(f"Conversation {conversation_id} not found")
        if conversation.owner_id != actor.id:
            raise PermissionFailure(
                f"Actor {actor.id} does not own conversation {conversation_id}"
            )
        return conversation

    def _ensure_snapshot(self, conversation: Conversation) -> Conversation:
        """Copy the anchor text onto the conversation the first time it is needed."""
        if (
            conversation.kind is not ConversationKind.ANCHORED
            or conversation.anchor_snapshot is not None
            or conversation.anchor_id is None
        ):
            return conversation
        anchor = self._store.load_anchor(conversation.anchor_id)
        if anchor is None:
            logger.warning(
                "Anchor %s missing for conversation %s", conversation.anchor_id, conversation.id
            )
            return conversation
        conversation.anchor_snapshot = AnchorSnapshot(
            content=anchor.content, context=anchor.context
        )
        return self._store.save(conversation)

    def _window_elapsed(self, conversation: Conversation, now: datetime) -> bool:
        return conversation.window_elapsed(now, self._settings.rolling_window_seconds)

    def _window_start_bound(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self._settings.rolling_window_seconds)

    def _daily_usage(self, actor: Actor, conversation: Conversation, now: datetime) -> int:
        others = self._store.daily_usage(
            actor.id, self._window_start_bound(now), exclude_conversation_id=conversation.id
        )
        return others + conversation.tokens_used

    def _view(self, conversation: Conversation, actor: Actor, now: datetime) -> ConversationView:
        used = 0 if self._window_elapsed(conversation, now) else conversation.tokens_used
        daily_used = self._store.daily_usage(actor.id, self._window_start_bound(now))
        return ConversationView(
            id=conversation.id,
            kind=conversation.kind,
            anchor_id=conversation.anchor_id,
            tokens_used=used,
            tokens_remaining=self._budget.conversation_remaining(used),
            daily_tokens_remaining=self._budget.daily_remaining(daily_used),
            window_started_at=conversation.window_started_at,
            created_at=conversation.created_at,
            messages=self._store.recent_messages(
                conversation.id, self._settings.max_initial_messages
            ),
        )
