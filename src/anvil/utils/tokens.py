"""Unified token estimation.

Single source of truth for the chars/token heuristic used throughout
the codebase.
"""

from __future__ import annotations

import math

DEFAULT_CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 6


def estimate_tokens(text: str, ratio: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate token count (~4 chars/token). Always returns >= 1."""
    if not text:
        return 1
    return max(1, math.ceil(len(text) / max(ratio, 0.1)))


def estimate_content_tokens(content: str, ratio: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Estimate a message body plus the fixed per-message overhead."""
    return math.ceil(len(content) / max(ratio, 0.1)) + MESSAGE_OVERHEAD_TOKENS
