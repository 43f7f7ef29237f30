"""Heuristic token estimator — approximates tokenizer cost without a vocabulary.

Lengths are measured in UTF-16 code units. Three sub-estimates are blended
depending on the shape of the text:

- long prose (more than 10 words) is priced per word plus punctuation;
- short, symbol-heavy text (more than 20% special characters) per character;
- everything else gets a weighted mix of the three.
"""

from __future__ import annotations

import math

_CHARS_PER_TOKEN = 3.8
_WORDS_PER_TOKEN = 0.73
_TOKENS_PER_SPECIAL = 0.8
_PROSE_WORD_THRESHOLD = 10
_SPECIAL_RATIO_THRESHOLD = 0.2
_BMP_MAX = 0xFFFF


def _utf16_length(text: str) -> int:
    return len(text) + sum(1 for ch in text if ord(ch) > _BMP_MAX)


def count_special_chars(text: str) -> int:
    """Count UTF-16 code units that are not letters, decimal digits or whitespace.

    A character outside the Basic Multilingual Plane is two surrogate units,
    and surrogates are always special.
    """
    count = 0
    for ch in text:
        if ord(ch) > _BMP_MAX:
            count += 2
        elif not (ch.isalpha() or ch.isdecimal() or ch.isspace()):
            count += 1
    return count


def estimate_tokens(text: str | None) -> int:
    """Estimate the token cost of *text*.

    Returns 0 for ``None``, empty or whitespace-only input and at least 1
    otherwise. Pure and deterministic.
    """
    if text is None:
        return 0
    normalized = text.strip()
    if not normalized:
        return 0

    char_count = _utf16_length(normalized)
    word_count = len(normalized.split())
    special_count = count_special_chars(normalized)

    by_chars = char_count / _CHARS_PER_TOKEN
    by_words = word_count / _WORDS_PER_TOKEN
    by_special = special_count * _TOKENS_PER_SPECIAL

    if word_count > _PROSE_WORD_THRESHOLD:
        estimate = by_words + by_special
    elif special_count > char_count * _SPECIAL_RATIO_THRESHOLD:
        estimate = by_chars
    else:
        estimate = by_words * 0.6 + by_chars * 0.3 + by_special * 0.1

    return max(1, math.ceil(estimate))
