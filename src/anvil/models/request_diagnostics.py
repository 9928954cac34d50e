"""Shared request diagnostics for model invocations.

Computes cheap, consistent size metrics for outbound LLM requests so the
transport can log payload growth before dispatch.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from anvil.models.base import Message, Role
from anvil.utils.tokens import estimate_tokens

_LARGE_REQUEST_BYTES = 200_000


def _safe_json_dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def response_format_mode(response_format: dict | None) -> str:
    """Short label for the structured-output mode carried by a request."""
    if not response_format:
        return "none"
    return str(response_format.get("type", "unknown"))


@dataclass(frozen=True)
class RequestDiagnostics:
    """Compact request metrics for logging."""

    request_bytes: int
    request_est_tokens: int
    message_count: int
    largest_message_chars: int
    system_chars: int
    user_chars: int
    assistant_chars: int
    response_format: str

    @property
    def is_large(self) -> bool:
        return self.request_bytes >= _LARGE_REQUEST_BYTES


def collect_request_diagnostics(
    *,
    messages: Sequence[Message],
    payload: Any = None,
    response_format: dict | None = None,
) -> RequestDiagnostics:
    """Compute request diagnostics from model-call inputs."""
    role_chars = {Role.SYSTEM: 0, Role.USER: 0, Role.ASSISTANT: 0}
    largest = 0
    for message in messages:
        size = len(message.content)
        largest = max(largest, size)
        role_chars[message.role] = role_chars.get(message.role, 0) + size

    payload_obj = payload if payload is not None else [m.to_dict() for m in messages]
    payload_json = _safe_json_dumps(payload_obj)

    return RequestDiagnostics(
        request_bytes=len(payload_json.encode("utf-8", errors="replace")),
        request_est_tokens=estimate_tokens(payload_json),
        message_count=len(messages),
        largest_message_chars=largest,
        system_chars=role_chars[Role.SYSTEM],
        user_chars=role_chars[Role.USER],
        assistant_chars=role_chars[Role.ASSISTANT],
        response_format=response_format_mode(response_format),
    )


def log_request_diagnostics(
    *,
    logger: logging.Logger,
    provider_name: str,
    model_name: str,
    operation: str,
    diagnostics: RequestDiagnostics,
) -> None:
    """Emit a one-line structured log for an outbound model request."""
    level = logging.INFO if diagnostics.is_large else logging.DEBUG
    logger.log(
        level,
        (
            "llm_request provider=%s model=%s op=%s format=%s "
            "request_bytes=%d request_est_tokens=%d messages=%d "
            "largest_message_chars=%d role_chars={system:%d,user:%d,assistant:%d}"
        ),
        provider_name,
        model_name,
        operation,
        diagnostics.response_format,
        diagnostics.request_bytes,
        diagnostics.request_est_tokens,
        diagnostics.message_count,
        diagnostics.largest_message_chars,
        diagnostics.system_chars,
        diagnostics.user_chars,
        diagnostics.assistant_chars,
    )
