"""Engine configuration — limits, retry policy and backend options.

Every field can be overridden from the environment with a ``TOKENWARD_``
prefix, e.g. ``TOKENWARD_MAX_TOKENS_PER_CHAT=20000``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

_ENV_PREFIX = "TOKENWARD_"


class ChatSettings(BaseModel):
    """Limits and tuning knobs for the conversation engine."""

    # Budgets
    max_tokens_per_message: int = Field(default=1000, gt=0)
    max_chars_per_message: int = Field(default=1000, gt=0)
    max_tokens_per_chat: int = Field(default=10000, gt=0)
    max_tokens_per_day: int = Field(default=10000, gt=0)
    rolling_window_hours: int = Field(default=24, gt=0)

    # History
    max_history_messages: int = Field(default=3, ge=0)
    max_history_tokens: int = Field(default=2048, ge=0)
    max_initial_messages: int = Field(default=10, ge=0)

    # Generation backend
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    timeout_seconds: float = Field(default=60.0, gt=0)
    max_response_length: int = Field(default=100000, gt=0)
    num_predict: int = 300
    temperature: float = 0.7
    top_p: float = 0.9
    num_ctx: int = 2048

    # Retries
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_multiplier: float = Field(default=2.0, ge=1.0)
    max_commit_attempts: int = Field(default=3, ge=1)

    # Escalation
    failure_threshold: int = Field(default=4, ge=1)
    failure_ttl_seconds: float = Field(default=3600.0, gt=0)

    @property
    def rolling_window_seconds(self) -> float:
        return self.rolling_window_hours * 3600.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ChatSettings:
        """Build settings from ``TOKENWARD_*`` variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        overrides: dict[str, str] = {}
        for name in cls.model_fields:
            value = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if value is not None and value.strip():
                overrides[name] = value.strip()
        return cls.model_validate(overrides)
