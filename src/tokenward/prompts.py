"""System prompts and history formatting for the generative backend."""

from __future__ import annotations

import re
from collections.abc import Sequence

from tokenward.models import AnchorSnapshot, ConversationKind, MessageRole, TurnMessage
from tokenward.provider import ChatMessage, ChatRole

DANGER_MARKER = "[MODERACAO: PERIGOSO]"

FREE_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer concisely.\n"
    "\n"
    "IMPORTANT: If the message suggests malicious, illegal or unethical content, "
    f'reply ONLY with: "{DANGER_MARKER}"\n'
    "\n"
    "Otherwise, answer normally."
)

ANCHORED_SYSTEM_PROMPT = (
    "You are discussing this piece of content:\n"
    "\n"
    'Content: "{content}"\n'
    'Context: "{context}"\n'
    "\n"
    "IMPORTANT: Answer ONLY questions related to this content.\n"
    f"If the message is NOT related, reply EXACTLY: {DANGER_MARKER}\n"
    "\n"
    "Keep answers concise (100 words at most)."
)

FALLBACK_SYSTEM_PROMPT = "You are a helpful and creative assistant. Answer concisely."

PRE_CHECK_PROMPT = (
    "Analyse the 'Topic' below. Does it suggest a malicious, illegal or unethical "
    "intent (phishing, fraud, malware, intrusion, etc.)?\n"
    "Reply ONLY 'SEGURO' or 'PERIGOSO'.\n"
    "\n"
    'Topic: "{topic}"\n'
    "\n"
    "ANSWER (SEGURO or PERIGOSO):"
)

_HORIZONTAL_SPACE = re.compile(r"[ \t]+")
_BLANK_LINES = re.compile(r"\n{3,}")


def sanitize_for_prompt(content: str | None) -> str:
    """Normalize line endings and whitespace so stored text renders cleanly."""
    if content is None:
        return ""
    text = content.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    text = _HORIZONTAL_SPACE.sub(" ", text)
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def system_prompt(kind: ConversationKind, snapshot: AnchorSnapshot | None = None) -> str:
    """Pick the system prompt for a conversation."""
    if kind is ConversationKind.FREE:
        return FREE_SYSTEM_PROMPT
    if snapshot is None:
        return FALLBACK_SYSTEM_PROMPT
    return ANCHORED_SYSTEM_PROMPT.format(
        content=sanitize_for_prompt(snapshot.content),
        context=sanitize_for_prompt(snapshot.context),
    )


def pre_check_prompt(text: str) -> str:
    return PRE_CHECK_PROMPT.format(topic=sanitize_for_prompt(text))


def history_messages(history: Sequence[TurnMessage]) -> list[ChatMessage]:
    """Convert stored turns into backend chat messages."""
    return [
        ChatMessage(
            role=ChatRole.USER if m.role is MessageRole.USER else ChatRole.ASSISTANT,
            content=sanitize_for_prompt(m.content),
        )
        for m in history
    ]
