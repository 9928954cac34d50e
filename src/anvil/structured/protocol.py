"""Structured JSON requests with negotiation, repair, validation and retries.

Every feature that needs machine-readable output from the model goes
through :func:`request_structured`:

1. send the messages through a :class:`NegotiatingRequester`
2. parse (and if needed repair) the response text
3. validate the value against the caller's JSON schema
4. on any failure, resend with a stricter system directive prepended

Attempts run strictly one after another. When all of them fail the last
error is raised wrapped in :class:`StructuredOutputExhaustedError`, and the
caller decides whether a deterministic fallback exists.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Sequence
from typing import Any

from jsonschema import Draft202012Validator

from anvil.config import Config
from anvil.exceptions import (
    InvalidStructuredOutputError,
    RequestCancelledError,
    StructuredOutputExhaustedError,
)
from anvil.models.base import Message, ModelResponse
from anvil.models.capabilities import (
    CapabilitySession,
    NegotiatingRequester,
    is_capability_rejection,
)
from anvil.models.router import DEFAULT_ROLE, ModelRouter
from anvil.structured.repair import parse_structured_text

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
_MAX_SCHEMA_ERRORS = 6

# Index = attempt number. Attempt 0 sends the caller's messages unchanged.
STRICTNESS_DIRECTIVES: tuple[str, ...] = (
    "",
    (
        "Return ONLY valid JSON. It must be parseable by a strict JSON parser. "
        "No code fences, no extra text."
    ),
    (
        "Return ONLY valid minified JSON. Escape all newlines inside strings as \\n "
        'and quotes inside strings as \\".'
    ),
    "Return ONLY minified JSON. No whitespace outside strings. If unsure, return {}.",
)


def strictness_directive(attempt: int) -> str | None:
    """Return the system directive for ``attempt``, or None for the first one."""
    if attempt <= 0:
        return None
    return STRICTNESS_DIRECTIVES[min(attempt, len(STRICTNESS_DIRECTIVES) - 1)]


def build_attempt_messages(messages: Sequence[Message], attempt: int) -> list[Message]:
    directive = strictness_directive(attempt)
    if directive is None:
        return list(messages)
    return [Message.system(directive), *messages]


def validate_against_schema(schema: dict, value: Any) -> None:
    """Raise InvalidStructuredOutputError listing the first few schema violations."""
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(value), key=lambda err: [str(p) for p in err.absolute_path])
    if not errors:
        return
    details = "; ".join(
        f"{err.json_path if err.absolute_path else '(root)'} {err.message}"
        for err in errors[:_MAX_SCHEMA_ERRORS]
    )
    raise InvalidStructuredOutputError(f"JSON did not match schema: {details}")


async def _exchange(
    requester: NegotiatingRequester,
    messages: list[Message],
    schema: dict,
    name: str,
    cancel: asyncio.Event | None,
) -> ModelResponse:
    """Run one exchange, aborting it as soon as ``cancel`` is set."""
    if cancel is None:
        return await requester.exchange(messages, schema, name=name)

    exchange = asyncio.ensure_future(requester.exchange(messages, schema, name=name))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({exchange, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not exchange.done():
            exchange.cancel()

    if cancel.is_set():
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await exchange
        raise RequestCancelledError(f"Structured request '{name}' was cancelled")
    return exchange.result()


async def request_structured(
    requester: NegotiatingRequester,
    messages: Sequence[Message],
    schema: dict,
    *,
    name: str = "response",
    max_retries: int = DEFAULT_MAX_RETRIES,
    cancel: asyncio.Event | None = None,
) -> Any:
    """Request a schema-valid JSON value with up to ``max_retries`` retries."""
    total_attempts = max(0, int(max_retries)) + 1
    last_error: Exception | None = None

    for attempt in range(total_attempts):
        if cancel is not None and cancel.is_set():
            raise RequestCancelledError(f"Structured request '{name}' was cancelled")
        attempt_messages = build_attempt_messages(messages, attempt)
        try:
            response = await _exchange(requester, attempt_messages, schema, name, cancel)
            value = parse_structured_text(response.text)
            validate_against_schema(schema, value)
            return value
        except RequestCancelledError:
            raise
        except Exception as error:
            last_error = error
            logger.warning(
                "Structured request %s attempt %d/%d failed: %s",
                name,
                attempt + 1,
                total_attempts,
                str(error)[:300],
            )

    raise StructuredOutputExhaustedError(total_attempts, last_error) from last_error


class StructuredClient:
    """Role-aware entry point for structured requests.

    Owns the :class:`CapabilitySession` so every role and call site shares
    one negotiated mode for the life of the process.
    """

    def __init__(
        self,
        router: ModelRouter,
        *,
        session: CapabilitySession | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        is_rejection: Callable[[BaseException], bool] = is_capability_rejection,
    ):
        self._router = router
        self._session = session or CapabilitySession()
        self._max_retries = max(0, int(max_retries))
        self._is_rejection = is_rejection

    @classmethod
    def from_config(cls, config: Config) -> StructuredClient:
        return cls(
            ModelRouter.from_config(config),
            max_retries=config.structured.max_retries,
        )

    @property
    def router(self) -> ModelRouter:
        return self._router

    @property
    def session(self) -> CapabilitySession:
        return self._session

    def requester_for(self, role: str = DEFAULT_ROLE) -> NegotiatingRequester:
        return NegotiatingRequester(
            self._router.select(role),
            self._session,
            is_rejection=self._is_rejection,
        )

    async def request(
        self,
        messages: Sequence[Message],
        schema: dict,
        *,
        role: str = DEFAULT_ROLE,
        name: str = "response",
        max_retries: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        return await request_structured(
            self.requester_for(role),
            messages,
            schema,
            name=name,
            max_retries=self._max_retries if max_retries is None else max_retries,
            cancel=cancel,
        )

    async def close(self) -> None:
        await self._router.close()
