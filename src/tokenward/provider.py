"""LLM Provider abstraction — pluggable transport for real and stub backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from enum import StrEnum

from pydantic import BaseModel

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class ChatRole(StrEnum):
    """Role of a message participant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """Single message in a conversation."""

    role: ChatRole
    content: str


class ChatRequest(BaseModel):
    """Request payload sent to an LLM provider."""

    model: str
    messages: list[ChatMessage]
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    context_window: int | None = None


class TokenUsage(BaseModel):
    """Token consumption reported by the backend, when it reports any."""

    prompt_tokens: int
    completion_tokens: int


class ChatResponse(BaseModel):
    """Response returned from an LLM provider."""

    content: str
    usage: TokenUsage | None = None


# ---------------------------------------------------------------------------
# LLMProvider ABC
# ---------------------------------------------------------------------------


class LLMProvider(ABC):
    """Abstract base class for generation transports.

    Implementations raise :class:`UpstreamServiceFailure` for every failure
    they can classify (HTTP status, connection, timeout, malformed body).
    """

    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. 'ollama')."""

    @abstractmethod
    def chat(self, request: ChatRequest, timeout: float) -> ChatResponse:
        """Send a chat completion request, giving up after *timeout* seconds."""


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubLLMProvider(LLMProvider):
    """Replays scripted replies without making real HTTP calls.

    Each script entry is either a reply string or an exception to raise.
    Once the script is exhausted the canned reply is returned.
    """

    _CANNED = "This is a stub response for testing purposes."

    def __init__(self, script: Iterable[str | Exception] = ()) -> None:
        self._script: list[str | Exception] = list(script)
        self.requests: list[ChatRequest] = []

    def name(self) -> str:
        return "stub"

    def enqueue(self, *entries: str | Exception) -> None:
        self._script.extend(entries)

    @property
    def call_count(self) -> int:
        return len(self.requests)

    def chat(self, request: ChatRequest, timeout: float) -> ChatResponse:
        """Return the next scripted reply or raise the next scripted error."""
        self.requests.append(request)
        entry: str | Exception = self._script.pop(0) if self._script else self._CANNED
        if isinstance(entry, Exception):
            raise entry
        prompt_tokens = sum(len(m.content.split()) for m in request.messages)
        return ChatResponse(
            content=entry,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=len(entry.split()),
            ),
        )

