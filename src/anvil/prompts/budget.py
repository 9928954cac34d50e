"""Token budget enforcement for chat messages (approximate).

System messages are bounded first (at most 35% of the usable budget), then
the remaining budget is filled with the most recent non-system messages,
walking backward so older turns are dropped first. A message that does not
fit whole is content-truncated with a visible marker instead of vanishing.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass, replace

from anvil.models.base import Message, Role
from anvil.utils.tokens import (
    DEFAULT_CHARS_PER_TOKEN,
    MESSAGE_OVERHEAD_TOKENS,
    estimate_content_tokens,
)

MIN_BUDGET_TOKENS = 200
USABLE_BUDGET_RATIO = 0.9
SYSTEM_BUDGET_RATIO = 0.35
MIN_TRUNCATED_CHARS = 32
TRUNCATION_MARKER = "\n... (trimmed)"

_TOKEN_LIMIT_RE = re.compile(r"maximum context length is\s+(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class BudgetResult:
    messages: list[Message]
    trimmed: bool
    estimated_tokens: int


def estimate_message_tokens(message: Message, ratio: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    return estimate_content_tokens(message.content, ratio)


def estimate_messages_tokens(
    messages: Sequence[Message], ratio: float = DEFAULT_CHARS_PER_TOKEN,
) -> int:
    return sum(estimate_message_tokens(msg, ratio) for msg in messages)


def usable_budget(max_tokens: int) -> int:
    return max(MIN_BUDGET_TOKENS, math.floor(max_tokens * USABLE_BUDGET_RATIO))


def trim_messages_to_token_budget(
    messages: Sequence[Message],
    max_tokens: int,
    ratio: float = DEFAULT_CHARS_PER_TOKEN,
) -> BudgetResult:
    """Return messages trimmed to fit ~90% of ``max_tokens``.

    Deterministic: the same input always yields the same output. ``trimmed``
    is True when the message count changed or the estimate still exceeds
    the usable budget.
    """
    ratio = max(float(ratio), 0.1)
    budget = usable_budget(max_tokens)
    system = [msg for msg in messages if msg.role == Role.SYSTEM]
    non_system = [msg for msg in messages if msg.role != Role.SYSTEM]

    system_budget = min(
        estimate_messages_tokens(system, ratio),
        math.floor(budget * SYSTEM_BUDGET_RATIO),
    )
    trimmed_system = _trim_from_start(system, system_budget, ratio)
    remaining = max(0, budget - estimate_messages_tokens(trimmed_system, ratio))
    trimmed_non_system = _trim_from_end(non_system, remaining, ratio)

    combined = trimmed_system + trimmed_non_system
    estimated = estimate_messages_tokens(combined, ratio)
    trimmed = len(combined) != len(messages) or estimated > budget
    return BudgetResult(messages=combined, trimmed=trimmed, estimated_tokens=estimated)


def _trim_from_start(
    messages: Sequence[Message], budget: int, ratio: float,
) -> list[Message]:
    """Keep messages in order until the budget runs out (system group)."""
    if budget <= 0:
        return []
    result: list[Message] = []
    used = 0
    for msg in messages:
        tokens = estimate_message_tokens(msg, ratio)
        if used + tokens <= budget:
            result.append(msg)
            used += tokens
            continue
        available = budget - used
        if available <= 0 and result:
            break
        result.append(truncate_message(msg, max(available, 0), ratio))
        break
    return result


def _trim_from_end(
    messages: Sequence[Message], budget: int, ratio: float,
) -> list[Message]:
    """Keep the most recent messages that fit; older ones go first."""
    result: list[Message] = []
    used = 0
    for msg in reversed(messages):
        tokens = estimate_message_tokens(msg, ratio)
        if used + tokens <= budget:
            result.append(msg)
            used += tokens
            continue
        available = budget - used
        if available <= 0 and result:
            break
        result.append(truncate_message(msg, max(available, 0), ratio))
        break
    result.reverse()
    return result


def truncate_message(message: Message, available_tokens: int, ratio: float) -> Message:
    """Cut message content to fit ``available_tokens``, appending the marker."""
    content_tokens = available_tokens - MESSAGE_OVERHEAD_TOKENS
    max_chars = math.floor(content_tokens * ratio) - len(TRUNCATION_MARKER)
    max_chars = max(MIN_TRUNCATED_CHARS, max_chars)
    if len(message.content) <= max_chars:
        return message
    return replace(message, content=f"{message.content[:max_chars]}{TRUNCATION_MARKER}")


def parse_token_limit_from_error(body: str) -> int | None:
    """Extract the backend's context limit from a "maximum context length" error."""
    match = _TOKEN_LIMIT_RE.search(body or "")
    if not match:
        return None
    value = int(match.group(1))
    return value if value > 0 else None
