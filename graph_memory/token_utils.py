"""Lightweight token counting.

Uses a character heuristic instead of tiktoken to avoid external
dependencies.  Approximation: ~4 chars per token, rounded up.
"""

from __future__ import annotations

import math

# Average chars per token for English text (conservative estimate).
_CHARS_PER_TOKEN = 4.0


def estimate_tokens(text: str) -> int:
    """Estimate token count for a text string (never less than 1)."""
    return max(1, math.ceil(len(text) / _CHARS_PER_TOKEN))
