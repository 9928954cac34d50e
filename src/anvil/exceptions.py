"""Anvil exception hierarchy.

Provides a structured exception tree so catch blocks can be specific
and callers can distinguish between different failure modes.
"""

from __future__ import annotations


class AnvilError(Exception):
    """Base for all Anvil exceptions."""


class ModelError(AnvilError):
    """Structured-output and model exchange failures."""


class InvalidStructuredOutputError(ModelError):
    """Raised when response text cannot be turned into a valid JSON value.

    ``original`` holds the parse or schema error from the first attempt to
    read the text, before any repair was applied.
    """

    def __init__(self, message: str, original: Exception | None = None):
        super().__init__(message)
        self.original = original


class StructuredOutputExhaustedError(ModelError):
    """Raised when every structured request attempt has failed.

    The final attempt's error is available as ``last_error`` and is also
    chained as ``__cause__``.
    """

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Structured request failed after {attempts} attempt(s){detail}")
        self.attempts = attempts
        self.last_error = last_error


class RequestCancelledError(AnvilError):
    """Raised when a caller-supplied cancellation signal aborts a request."""


class ToolError(AnvilError):
    """Local tool execution failures."""


class CommandRefusedError(ToolError):
    """Raised when a shell command matches a blocked pattern."""


class StateError(AnvilError):
    """Persistence and memory state failures."""
