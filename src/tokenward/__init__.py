"""tokenward — token-budgeted conversation engine."""

from __future__ import annotations

__version__ = "0.1.0"

from .budget import BudgetEnforcer
from .config import ChatSettings
from .engine import ChatEngine
from .errors import (
    BudgetExceeded,
    ConcurrencyConflict,
    ModerationRejected,
    NotFoundFailure,
    PermissionFailure,
    TokenwardError,
    UpstreamServiceFailure,
    ValidationFailure,
)
from .escalation import AlertSink, ExpiringStore, FailureEscalator, LoggingAlertSink
from .fsm import TurnPhase, TurnState
from .generation import GenerationClient, RetryingGenerator
from .history import HistoryWindower
from .identity import IdentityProvider, StaticIdentityProvider
from .metrics import ChatMetrics, InMemoryMetricsSink, MetricsSink
from .models import (
    Actor,
    Anchor,
    AnchorSnapshot,
    Conversation,
    ConversationKind,
    ConversationView,
    MessageRole,
    TurnMessage,
    TurnResult,
)
from .moderation import ModerationGate, ModerationVerdict
from .ollama_provider import OllamaProvider
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatRole,
    LLMProvider,
    StubLLMProvider,
    TokenUsage,
)
from .store import InMemoryRecordStore, RecordStore, SqliteRecordStore
from .telemetry import TelemetryConfig, TurnTracer
from .tokens import estimate_tokens

__all__ = [
    "Actor",
    "AlertSink",
    "Anchor",
    "AnchorSnapshot",
    "BudgetEnforcer",
    "BudgetExceeded",
    "ChatEngine",
    "ChatMessage",
    "ChatMetrics",
    "ChatRequest",
    "ChatResponse",
    "ChatRole",
    "ChatSettings",
    "ConcurrencyConflict",
    "Conversation",
    "ConversationKind",
    "ConversationView",
    "ExpiringStore",
    "FailureEscalator",
    "GenerationClient",
    "HistoryWindower",
    "IdentityProvider",
    "InMemoryMetricsSink",
    "InMemoryRecordStore",
    "LLMProvider",
    "LoggingAlertSink",
    "MessageRole",
    "MetricsSink",
    "ModerationGate",
    "ModerationRejected",
    "ModerationVerdict",
    "NotFoundFailure",
    "OllamaProvider",
    "PermissionFailure",
    "RecordStore",
    "RetryingGenerator",
    "SqliteRecordStore",
    "StaticIdentityProvider",
    "StubLLMProvider",
    "TelemetryConfig",
    "TokenUsage",
    "TokenwardError",
    "TurnMessage",
    "TurnPhase",
    "TurnResult",
    "TurnState",
    "TurnTracer",
    "UpstreamServiceFailure",
    "ValidationFailure",
    "estimate_tokens",
]
