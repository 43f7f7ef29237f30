"""Chat metrics — counters and timers behind a best-effort facade."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """Destination for counters and timers."""

    @abstractmethod
    def increment(self, name: str, amount: int = 1, tags: dict[str, str] | None = None) -> None: ...

    @abstractmethod
    def timing(self, name: str, millis: float, tags: dict[str, str] | None = None) -> None: ...


def _key(name: str, tags: dict[str, str] | None) -> str:
    if not tags:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}[{rendered}]"


@dataclass
class InMemoryMetricsSink(MetricsSink):
    """Keeps everything in process; used by tests and the default engine."""

    counters: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    timings: dict[str, list[float]] = field(default_factory=lambda: defaultdict(list))
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def increment(self, name: str, amount: int = 1, tags: dict[str, str] | None = None) -> None:
        with self._lock:
            self.counters[_key(name, tags)] += amount

    def timing(self, name: str, millis: float, tags: dict[str, str] | None = None) -> None:
        with self._lock:
            self.timings[_key(name, tags)].append(millis)

    def summary(self) -> dict:
        with self._lock:
            return {
                "counters": dict(self.counters),
                "avg_ms": {
                    k: round(sum(v) / len(v), 2) for k, v in self.timings.items() if v
                },
            }


class ChatMetrics:
    """Domain-level recording helpers. A failing sink never fails a turn."""

    def __init__(self, sink: MetricsSink | None = None) -> None:
        self._sink = sink or InMemoryMetricsSink()

    @property
    def sink(self) -> MetricsSink:
        return self._sink

    def _count(self, name: str, amount: int = 1, tags: dict[str, str] | None = None) -> None:
        try:
            self._sink.increment(name, amount, tags)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to record metric %s", name, exc_info=True)

    def _time(self, name: str, millis: float, tags: dict[str, str] | None = None) -> None:
        try:
            self._sink.timing(name, millis, tags)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to record timing %s", name, exc_info=True)

    def record_call_latency(self, millis: float, model: str) -> None:
        self._time("generation.latency", millis, {"model": model})

    def record_generation_error(self, kind: str, model: str) -> None:
        self._count("generation.errors", tags={"kind": kind, "model": model})

    def record_token_usage(self, input_tokens: int, output_tokens: int, kind: str) -> None:
        self._count("tokens.input", input_tokens, {"kind": kind})
        self._count("tokens.output", output_tokens, {"kind": kind})

    def record_validation_error(self, reason: str) -> None:
        self._count("validation.errors", tags={"reason": reason})

    def record_message_sent(self, kind: str) -> None:
        self._count("messages.sent", tags={"kind": kind})

    def record_processing_time(self, millis: float, kind: str) -> None:
        self._time("turn.processing", millis, {"kind": kind})
