"""tokenward quickstart.

Walks one actor through the engine end-to-end:
1. Start a free-form conversation
2. Submit a turn (safety pre-check, generation, post-moderation)
3. Show the remaining per-conversation and daily budgets
4. Start a conversation anchored to an earlier piece of content

Uses the scripted stub backend by default -- no real LLM needed.
Pass ``--ollama`` to talk to a local Ollama server instead.

Run: python examples/quickstart.py [--ollama]
"""

from __future__ import annotations

import logging
import sys

from tokenward import (
    Actor,
    Anchor,
    ChatEngine,
    ChatSettings,
    ConversationKind,
    InMemoryRecordStore,
    OllamaProvider,
    StubLLMProvider,
    TokenwardError,
)


def _check(condition: bool, msg: str) -> None:  # noqa: FBT001
    """Raise RuntimeError if *condition* is False (demo validation)."""
    if not condition:
        raise RuntimeError(msg)


def run_demo(use_ollama: bool = False) -> None:  # noqa: FBT001, FBT002
    print("=" * 60)
    print("tokenward quickstart")
    print("=" * 60)

    if use_ollama:
        provider = OllamaProvider()
    else:
        provider = StubLLMProvider(
            [
                "SEGURO",
                "[MODERACAO: SEGURA] Start with a simple loaf: flour, water, salt, yeast.",
                "Add a map so neighbours can find swaps close to home.",
            ]
        )
    store = InMemoryRecordStore()
    engine = ChatEngine(store, provider, ChatSettings.from_env())
    actor = Actor(id="demo-user", email="demo@example.com")

    # ------------------------------------------------------------------
    # Step 1: free-form conversation
    # ------------------------------------------------------------------
    print("\n[1/4] Starting a free-form conversation...")
    view = engine.start_or_resume_conversation(actor, ConversationKind.FREE)
    print(f"  Conversation: {view.id}")
    print(f"  Remaining   : {view.tokens_remaining} tokens")

    # ------------------------------------------------------------------
    # Step 2: submit a turn
    # ------------------------------------------------------------------
    print("\n[2/4] Submitting a turn...")
    question = "How do I bake my first loaf of bread?"
    try:
        result = engine.submit_turn(view.id, actor, question)
    except TokenwardError as exc:
        print(f"  Rejected: {exc.user_message}")
        return
    print(f"  You      : {question}")
    print(f"  Assistant: {result.content}")
    print(f"  Tokens   : {result.input_tokens} in / {result.output_tokens} out")

    # ------------------------------------------------------------------
    # Step 3: budgets
    # ------------------------------------------------------------------
    print("\n[3/4] Checking budgets...")
    view = engine.get_conversation(view.id, actor)
    print(f"  Conversation remaining: {view.tokens_remaining}")
    print(f"  Daily remaining       : {view.daily_tokens_remaining}")
    _check(view.tokens_used == result.tokens_consumed, "Counter does not match the turn")
    _check(len(view.messages) == 2, "Expected the user and assistant messages")

    # ------------------------------------------------------------------
    # Step 4: anchored conversation
    # ------------------------------------------------------------------
    print("\n[4/4] Chatting about an earlier idea...")
    anchor = store.save_anchor(
        Anchor(owner_id=actor.id, content="A seed-swap app for neighbours", context="apps")
    )
    anchored = engine.start_or_resume_conversation(actor, ConversationKind.ANCHORED, anchor.id)
    reply = engine.submit_turn(anchored.id, actor, "How could I make it more useful?")
    print(f"  Anchor   : {anchor.content}")
    print(f"  Assistant: {reply.content}")
    print(f"  Daily remaining: {reply.daily_tokens_remaining}")

    print("\n" + "=" * 60)
    print("Quickstart PASSED")
    print("=" * 60)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_demo(use_ollama="--ollama" in sys.argv[1:])
