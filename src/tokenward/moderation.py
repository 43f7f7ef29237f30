"""Moderation gate — safety classification of user input and generated text.

The backend is instructed to answer with a danger marker instead of content
when it refuses. Detection only looks at the *start* of the reply; a marker
quoted mid-answer is treated as ordinary text and stripped.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from tokenward.errors import ModerationRejected, UpstreamServiceFailure
from tokenward.models import ConversationKind
from tokenward.prompts import pre_check_prompt
from tokenward.telemetry import trace_moderation

logger = logging.getLogger(__name__)

FREE_REJECTION = (
    "Sorry, I can't process this message because of its content. "
    "Can I help you with something else?"
)
ANCHORED_REJECTION = (
    "Sorry, your message isn't related to the content of this conversation. "
    "Please keep to its topic. How can I help you develop or improve it?"
)

# Both spellings of the marker keyword are in use: MODERACAO and MODERAÇÃO.
_KEYWORD = r"MODERA[CÇ][AÃ]O"

_DANGER_LEADING = re.compile(rf"^\s*\[\s*{_KEYWORD}\s*:\s*PERIGOSO\s*\]", re.IGNORECASE)
_ANY_MARKER = re.compile(
    rf"\[\s*{_KEYWORD}\s*:\s*(?:SEGUR[AO]|PERIGOSO)\s*\]",
    re.IGNORECASE,
)
_PRE_CHECK_DANGER = re.compile(r"\bPERIGOSO\b", re.IGNORECASE)

_TRIVIAL_REPLIES = frozenset({"ok", "sim", "não", "nao"})


@dataclass(frozen=True)
class ModerationVerdict:
    """Result of normalizing a generated reply."""

    content: str
    rejected: bool
    reason: str = ""


def rejection_message(kind: ConversationKind) -> str:
    return ANCHORED_REJECTION if kind is ConversationKind.ANCHORED else FREE_REJECTION


def is_dangerous(text: str | None) -> bool:
    """True when the trimmed text starts with a danger marker."""
    if text is None or not text.strip():
        return False
    return _DANGER_LEADING.search(text.strip()) is not None


def strip_markers(text: str) -> str:
    """Remove every moderation marker, including ones revealed by a removal."""
    stripped = text
    while True:
        stripped, count = _ANY_MARKER.subn("", stripped)
        if count == 0:
            return stripped.strip()


def _is_trivial(text: str) -> bool:
    if not text.replace('"', "").replace("'", "").strip():
        return True
    return text.lower() in _TRIVIAL_REPLIES


class ModerationGate:
    """Pre-generation classification and post-generation normalization."""

    def pre_check(
        self,
        text: str,
        kind: ConversationKind,
        classify: Callable[[str], str],
    ) -> None:
        """Ask the backend to classify *text*; raise when it answers dangerous.

        Only free-form conversations are pre-checked. Anchored ones rely on
        the system prompt restricting the topic.
        """
        if kind is not ConversationKind.FREE:
            return
        with trace_moderation("pre"):
            verdict = classify(pre_check_prompt(text))
        if _PRE_CHECK_DANGER.search(verdict or ""):
            logger.warning("Pre-check flagged input (%d chars)", len(text))
            raise ModerationRejected(rejection_message(kind))

    def normalize(self, raw: str | None, kind: ConversationKind) -> ModerationVerdict:
        """Turn a raw backend reply into the text that is stored and returned."""
        with trace_moderation("post"):
            if is_dangerous(raw):
                logger.warning("Generated reply flagged dangerous (kind=%s)", kind)
                return ModerationVerdict(rejection_message(kind), rejected=True, reason="marker")

            content = strip_markers(raw or "")
            if not content:
                msg = "Backend reply was empty after removing moderation markers"
                raise UpstreamServiceFailure(msg, kind="empty_reply")

            if kind is ConversationKind.ANCHORED and _is_trivial(content):
                logger.warning("Anchored reply looked off-topic: %r", content)
                return ModerationVerdict(ANCHORED_REJECTION, rejected=True, reason="trivial")

            return ModerationVerdict(content, rejected=False)
