"""Generation client and caller-level retry wrapper.

``GenerationClient`` performs exactly one backend call, validates the reply
size and records latency or an error-kind counter. ``RetryingGenerator``
wraps it with bounded exponential backoff and collapses exhaustion into a
single generic failure.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tokenward.config import ChatSettings
from tokenward.errors import UpstreamServiceFailure
from tokenward.metrics import ChatMetrics
from tokenward.provider import ChatMessage, ChatRequest, ChatRole, LLMProvider
from tokenward.telemetry import trace_generation

logger = logging.getLogger(__name__)


class GenerationClient:
    """Single-shot generation against an :class:`LLMProvider`."""

    def __init__(
        self,
        provider: LLMProvider,
        settings: ChatSettings,
        metrics: ChatMetrics | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._metrics = metrics or ChatMetrics()
        self._timer = timer

    def build_request(
        self,
        system_prompt: str | None,
        history: Sequence[ChatMessage],
        user_prompt: str,
    ) -> ChatRequest:
        messages: list[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(role=ChatRole.SYSTEM, content=system_prompt))
        messages.extend(history)
        messages.append(ChatMessage(role=ChatRole.USER, content=user_prompt))
        s = self._settings
        return ChatRequest(
            model=s.ollama_model,
            messages=messages,
            max_tokens=s.num_predict,
            temperature=s.temperature,
            top_p=s.top_p,
            context_window=s.num_ctx,
        )

    def generate(
        self,
        system_prompt: str | None,
        history: Sequence[ChatMessage],
        user_prompt: str,
    ) -> str:
        """Return the raw reply text. Raises :class:`UpstreamServiceFailure`."""
        request = self.build_request(system_prompt, history, user_prompt)
        model = request.model
        started = self._timer()
        try:
            with trace_generation(model):
                response = self._provider.chat(request, self._settings.timeout_seconds)
            if response is None:
                msg = "Backend returned no response"
                raise UpstreamServiceFailure(msg, kind="null_response")
            content = response.content.strip()
            limit = self._settings.max_response_length
            if len(content) > limit:
                msg = f"Backend reply exceeds the maximum length of {limit} characters"
                raise UpstreamServiceFailure(msg, kind="too_long")
        except UpstreamServiceFailure as exc:
            self._metrics.record_generation_error(exc.kind, model)
            raise

        self._metrics.record_call_latency((self._timer() - started) * 1000.0, model)
        return content


class RetryingGenerator:
    """Retries :class:`UpstreamServiceFailure` with exponential backoff.

    Built on :class:`tenacity.Retrying`; any other exception propagates on
    the first attempt.
    """

    def __init__(
        self,
        client: GenerationClient,
        attempts: int = 3,
        delay_ms: int = 1000,
        multiplier: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            msg = "attempts must be at least 1"
            raise ValueError(msg)
        self._client = client
        self._attempts = attempts
        self._delay_ms = delay_ms
        self._multiplier = multiplier
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        client: GenerationClient,
        settings: ChatSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> RetryingGenerator:
        return cls(
            client,
            attempts=settings.retry_attempts,
            delay_ms=settings.retry_delay_ms,
            multiplier=settings.retry_multiplier,
            sleep=sleep,
        )

    def _retrying(self, log_context: str) -> Retrying:
        attempts = self._attempts

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                "Generation attempt %d/%d failed [%s] kind=%s: %s; retrying in %.1fs",
                retry_state.attempt_number,
                attempts,
                log_context,
                getattr(exc, "kind", "unknown"),
                exc,
                retry_state.next_action.sleep,
            )

        return Retrying(
            sleep=self._sleep,
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(
                multiplier=self._delay_ms / 1000.0, exp_base=self._multiplier
            ),
            retry=retry_if_exception_type(UpstreamServiceFailure),
            before_sleep=log_retry,
        )

    def generate(
        self,
        system_prompt: str | None,
        history: Sequence[ChatMessage],
        user_prompt: str,
        *,
        log_context: str = "",
    ) -> str:
        retrying = self._retrying(log_context)
        try:
            return retrying(self._client.generate, system_prompt, history, user_prompt)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            logger.error(
                "Generation exhausted %d attempts [%s]: %s", self._attempts, log_context, last
            )
            msg = "Assistant service temporarily unavailable after retries"
            raise UpstreamServiceFailure(msg, kind="exhausted") from last
