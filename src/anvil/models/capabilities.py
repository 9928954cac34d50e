"""Structured-output capability negotiation.

OpenAI-compatible servers disagree about ``response_format``: some accept a
JSON schema, some only ``{"type": "json_object"}``, some reject the field
outright. The first exchange discovers what the backend accepts and the
result is kept on a :class:`CapabilitySession` shared by every call site,
so later requests skip modes that are known to fail.

The session only ever moves toward less expressive modes::

    unknown -> schema-mode -> object-mode -> none

Transport failures that are not about ``response_format`` leave the
session untouched and propagate to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from enum import StrEnum

from anvil.models.base import Message, ModelConnectionError, ModelProvider, ModelResponse

logger = logging.getLogger(__name__)


class CapabilityState(StrEnum):
    UNKNOWN = "unknown"
    SCHEMA = "schema-mode"
    OBJECT = "object-mode"
    NONE = "none"


_DOWNGRADE_ORDER = (
    CapabilityState.UNKNOWN,
    CapabilityState.SCHEMA,
    CapabilityState.OBJECT,
    CapabilityState.NONE,
)

_NEXT_MODE = {
    CapabilityState.SCHEMA: CapabilityState.OBJECT,
    CapabilityState.OBJECT: CapabilityState.NONE,
}

_FORMAT_TERMS = (
    "response_format",
    "response format",
    "json_schema",
    "json_object",
    "guided_json",
    "structured output",
)

_REJECTION_TERMS = (
    "unsupported",
    "not supported",
    "does not support",
    "unrecognized",
    "unrecognised",
    "not recognized",
    "unknown",
    "unexpected",
    "invalid",
    "not allowed",
    "not permitted",
    "extra inputs",
    "extra_forbidden",
)


def is_capability_rejection(error: BaseException) -> bool:
    """Return True when an error says the backend does not accept the format field.

    Best effort: backends only surface free text, so this looks for a
    response-format term together with rejection vocabulary. Connection
    failures and timeouts never count.
    """
    if isinstance(error, ModelConnectionError) and error.status_code is None:
        return False

    parts = [str(error or "")]
    body = getattr(error, "body", "")
    if body:
        parts.append(str(body))
    text = " ".join(parts).lower()
    if not text.strip():
        return False

    mentions_format = any(term in text for term in _FORMAT_TERMS)
    return mentions_format and any(term in text for term in _REJECTION_TERMS)


def build_response_format(
    mode: CapabilityState, schema: dict, name: str = "response",
) -> dict | None:
    """Return the ``response_format`` request field for a negotiation mode."""
    if mode == CapabilityState.SCHEMA:
        return {
            "type": "json_schema",
            "json_schema": {"name": name, "schema": schema, "strict": False},
        }
    if mode == CapabilityState.OBJECT:
        return {"type": "json_object"}
    return None


class CapabilitySession:
    """Process-wide record of the structured-output mode a backend accepts.

    Create one per application and hand it to every requester. Concurrent
    negotiations may race; both converge on the same mode, and the state
    never moves back toward a more expressive one.
    """

    def __init__(self, state: CapabilityState = CapabilityState.UNKNOWN):
        self._state = state

    @property
    def state(self) -> CapabilityState:
        return self._state

    def candidate_modes(self) -> tuple[CapabilityState, ...]:
        """Modes worth trying next, most expressive first."""
        if self._state in (CapabilityState.UNKNOWN, CapabilityState.SCHEMA):
            return (CapabilityState.SCHEMA, CapabilityState.OBJECT, CapabilityState.NONE)
        if self._state == CapabilityState.OBJECT:
            return (CapabilityState.OBJECT, CapabilityState.NONE)
        return (CapabilityState.NONE,)

    def record_success(self, mode: CapabilityState) -> None:
        self._advance_to(mode)

    def record_rejection(self, mode: CapabilityState) -> None:
        next_mode = _NEXT_MODE.get(mode)
        if next_mode is not None:
            self._advance_to(next_mode)

    def _advance_to(self, target: CapabilityState) -> None:
        if _DOWNGRADE_ORDER.index(target) <= _DOWNGRADE_ORDER.index(self._state):
            return
        logger.info("Structured output capability: %s -> %s", self._state, target)
        self._state = target


class NegotiatingRequester:
    """Performs one structured exchange, negotiating ``response_format`` as needed."""

    def __init__(
        self,
        provider: ModelProvider,
        session: CapabilitySession,
        *,
        is_rejection: Callable[[BaseException], bool] = is_capability_rejection,
    ):
        self._provider = provider
        self._session = session
        self._is_rejection = is_rejection

    @property
    def provider(self) -> ModelProvider:
        return self._provider

    @property
    def session(self) -> CapabilitySession:
        return self._session

    async def exchange(
        self,
        messages: Sequence[Message],
        schema: dict,
        *,
        name: str = "response",
    ) -> ModelResponse:
        """Send ``messages`` using the most expressive mode the backend accepts."""
        for mode in self._session.candidate_modes():
            response_format = build_response_format(mode, schema, name)
            try:
                response = await self._provider.complete(
                    messages, response_format=response_format,
                )
            except Exception as error:
                if mode != CapabilityState.NONE and self._is_rejection(error):
                    logger.info(
                        "Backend %s rejected %s: %s",
                        self._provider.name,
                        mode,
                        str(error)[:200],
                    )
                    self._session.record_rejection(mode)
                    continue
                raise
            self._session.record_success(mode)
            return response
        raise RuntimeError("capability negotiation produced no candidate modes")
