"""OpenTelemetry tracing integration for tokenward.

Provides distributed tracing with support for stdout, OTLP, and noop exporters.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the tokenward tracing subsystem."""

    service_name: str = "tokenward"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# TurnTracer
# ---------------------------------------------------------------------------


class TurnTracer:
    """Wraps ``TracerProvider`` setup and hands out spans for turn phases."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config
        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        elif cfg.exporter == "otlp":
            # Exporter ships separately as opentelemetry-exporter-otlp.
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
            from opentelemetry.sdk.trace.export import SimpleSpanProcessor

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(
                SimpleSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
            )
        else:
            msg = f"Unknown exporter: {cfg.exporter}"
            raise ValueError(msg)

        self._provider = provider
        self._tracer = provider.get_tracer(cfg.service_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager."""
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def record_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        """Record a named event on the current active span (if any)."""
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.add_event(name, dict(attributes) if attributes else {})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider. Safe to call twice."""
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Module-level default (lazily initialised)
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: TurnTracer | None = None


def get_tracer() -> TurnTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = TurnTracer()
    return _DEFAULT_TRACER


def set_tracer(tracer: TurnTracer | None) -> None:
    """Install *tracer* as the process default (``None`` restores the noop one)."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    _DEFAULT_TRACER = tracer


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_turn(conversation_id: str, actor_id: str) -> Generator[Span, None, None]:
    """Trace a whole conversational turn."""
    attrs = {"conversation.id": conversation_id, "actor.id": actor_id}
    with get_tracer().span("turn/submit", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_generation(model: str) -> Generator[Span, None, None]:
    """Trace a single backend generation call."""
    with get_tracer().span("generation/call", {"generation.model": model}) as s:
        yield s


@contextlib.contextmanager
def trace_moderation(stage: str) -> Generator[Span, None, None]:
    """Trace a moderation check (``pre`` or ``post``)."""
    with get_tracer().span("moderation/check", {"moderation.stage": stage}) as s:
        yield s
