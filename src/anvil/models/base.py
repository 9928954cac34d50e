"""Abstract model interface.

All transports implement this interface, providing a unified API for
completions (optionally constrained by a response format), streaming,
and health checks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass, field
from enum import StrEnum


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One role-tagged conversation message. Never mutated in place."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)

    def to_dict(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


@dataclass
class TokenUsage:
    """Token usage statistics for a model response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ModelResponse:
    """Text response from a model completion."""

    text: str
    raw: str | dict = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    latency_ms: int = 0
    finish_reason: str = ""


@dataclass
class StreamChunk:
    """A single chunk from a streaming model response."""

    text: str = ""
    done: bool = False
    usage: TokenUsage | None = None


class ModelProvider(ABC):
    """Abstract base class for all model transports."""

    @abstractmethod
    async def complete(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> ModelResponse:
        """Send a completion request and return the response text."""
        ...

    async def stream(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream a completion response, yielding chunks as they arrive.

        Default implementation: falls back to complete() and yields one chunk.
        Providers should override this for true streaming support.
        """
        response = await self.complete(
            messages, temperature=temperature, max_tokens=max_tokens,
        )
        yield StreamChunk(text=response.text, done=True, usage=response.usage)

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the model is available and responding."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable model name."""
        ...

    async def close(self) -> None:
        """Release transport resources."""


class ModelNotAvailableError(Exception):
    """Raised when no suitable model is configured for a request."""


class ModelConnectionError(Exception):
    """Raised when a model API call fails due to network or server issues.

    Wraps the underlying httpx/transport error with a user-friendly
    message and preserves the original exception for debugging. HTTP
    failures also carry the status code and (truncated) body text so
    callers can inspect the backend's own description of the problem.
    """

    def __init__(
        self,
        message: str,
        original: Exception | None = None,
        *,
        status_code: int | None = None,
        body: str = "",
    ):
        super().__init__(message)
        self.original = original
        self.status_code = status_code
        self.body = body
