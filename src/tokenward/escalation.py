"""Failure escalation — alert after repeated upstream failures for one actor."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tokenward.models import Actor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Expiring key-value store
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    value: Any
    expires_at: float  # clock() + ttl


class ExpiringStore:
    """Thread-safe in-process key-value store with a per-store TTL.

    Expired entries are evicted when read and swept on every write.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            msg = "ttl_seconds must be positive"
            raise ValueError(msg)
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            self._entries[key] = _Entry(value=value, expires_at=now + self._ttl)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for e in self._entries.values() if e.expires_at > now)


# ---------------------------------------------------------------------------
# Alert sinks
# ---------------------------------------------------------------------------


class AlertSink(ABC):
    """Receives escalation notices."""

    @abstractmethod
    def notify(self, actor: Actor, failure_count: int) -> None: ...


class LoggingAlertSink(AlertSink):
    """Writes escalation notices to the log."""

    def notify(self, actor: Actor, failure_count: int) -> None:
        logger.error(
            "[ALERT] %d consecutive generation failures for actor %s (%s)",
            failure_count,
            actor.id,
            actor.email or "no email",
        )


# ---------------------------------------------------------------------------
# Escalator
# ---------------------------------------------------------------------------


class FailureEscalator:
    """Counts consecutive failures per actor and alerts at a threshold.

    The counter is reset after each alert, so a persistent outage produces
    one alert per ``threshold`` failures.
    """

    def __init__(
        self,
        store: ExpiringStore,
        sink: AlertSink,
        threshold: int = 4,
        lock_stripes: int = 64,
    ) -> None:
        if threshold < 1:
            msg = "threshold must be at least 1"
            raise ValueError(msg)
        if lock_stripes < 1:
            msg = "lock_stripes must be at least 1"
            raise ValueError(msg)
        self._store = store
        self._sink = sink
        self._threshold = threshold
        # Fixed pool; actors hash onto a stripe so the pool never grows.
        self._locks = tuple(threading.Lock() for _ in range(lock_stripes))

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    def failure_count(self, actor: Actor) -> int:
        return self._store.get(actor.id) or 0

    def record_failure(self, actor: Actor) -> int:
        """Increment the actor's counter; return the count reached."""
        with self._lock_for(actor.id):
            count = (self._store.get(actor.id) or 0) + 1
            escalate = count >= self._threshold
            if escalate:
                self._store.delete(actor.id)
            else:
                self._store.put(actor.id, count)

        if escalate:
            try:
                self._sink.notify(actor, count)
            except Exception:  # noqa: BLE001
                logger.exception("Alert sink failed for actor %s", actor.id)
        return count

    def record_success(self, actor: Actor) -> None:
        with self._lock_for(actor.id):
            self._store.delete(actor.id)
