"""OpenAI-compatible model provider.

Connects to any OpenAI-compatible API endpoint:
vLLM, llama.cpp server, LM Studio, MLX server, Ollama's /v1 shim, etc.
Requests are optionally budgeted to ``max_input_tokens`` and are retried
once, trimmed, when the server reports its maximum context length.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncGenerator, Sequence

import httpx

from anvil.config import ModelConfig
from anvil.models.base import (
    Message,
    ModelConnectionError,
    ModelProvider,
    ModelResponse,
    StreamChunk,
    TokenUsage,
)
from anvil.models.request_diagnostics import (
    collect_request_diagnostics,
    log_request_diagnostics,
)
from anvil.prompts.budget import parse_token_limit_from_error, trim_messages_to_token_budget

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500
_TEXT_PART_TYPES = frozenset({"text", "output_text"})


def _content_text(value: object) -> str:
    """Flatten message content (plain string or a list of parts) to text."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        parts = [_content_text(item) for item in value]
        return "\n".join(part for part in parts if part)
    if isinstance(value, dict):
        if str(value.get("type", "")).lower() in _TEXT_PART_TYPES:
            return _content_text(value.get("text"))
        return _content_text(value.get("content") or value.get("text"))
    return ""


class OpenAICompatibleProvider(ModelProvider):
    """Provider for OpenAI-compatible API endpoints."""

    def __init__(
        self,
        config: ModelConfig,
        provider_name: str = "",
        model_override: str = "",
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        headers: dict[str, str] = {}
        api_key = config.api_key.strip()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=config.endpoint.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=headers,
        )
        self._model = model_override or config.model
        self._temperature = config.temperature
        self._max_input_tokens = config.max_input_tokens
        self._provider_name = provider_name or self._model

    @staticmethod
    async def _http_error_body(response: httpx.Response, limit: int = _ERROR_BODY_LIMIT) -> str:
        """Safely extract an HTTP error body from normal or streaming responses."""
        try:
            body = await response.aread()
            if body:
                return body.decode("utf-8", errors="replace")[:limit]
        except Exception:
            pass

        try:
            return str(response.text)[:limit]
        except Exception:
            return "<response body unavailable>"

    def _transport_error(self, error: httpx.TransportError) -> ModelConnectionError:
        if isinstance(error, httpx.ConnectError):
            detail = f"Cannot connect to model server at {self._client.base_url}"
        elif isinstance(error, httpx.TimeoutException):
            detail = f"Model request timed out ({self._model})"
        else:
            detail = f"Model transport failed ({self._model})"
        return ModelConnectionError(f"{detail}: {error}", original=error)

    def _prepare_messages(self, messages: Sequence[Message]) -> list[Message]:
        if not self._max_input_tokens:
            return list(messages)
        budgeted = trim_messages_to_token_budget(messages, self._max_input_tokens)
        if budgeted.trimmed:
            logger.debug(
                "Trimmed request to ~%d tokens (limit %d)",
                budgeted.estimated_tokens,
                self._max_input_tokens,
            )
        return budgeted.messages

    def _build_payload(
        self,
        messages: Sequence[Message],
        *,
        temperature: float | None,
        max_tokens: int | None,
        response_format: dict | None = None,
        stream: bool = False,
    ) -> dict:
        payload: dict = {
            "model": self._model,
            "messages": [m.to_dict() for m in messages],
            "temperature": temperature if temperature is not None else self._temperature,
            "stream": stream,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if response_format:
            payload["response_format"] = response_format
        return payload

    async def _post(self, payload: dict) -> httpx.Response:
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body_text = await self._http_error_body(e.response)
            raise ModelConnectionError(
                f"Model server returned HTTP "
                f"{e.response.status_code}: "
                f"{body_text}",
                original=e,
                status_code=e.response.status_code,
                body=body_text,
            ) from e
        except httpx.TransportError as e:
            raise self._transport_error(e) from e
        return response

    async def complete(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        response_format: dict | None = None,
    ) -> ModelResponse:
        prepared = self._prepare_messages(messages)
        payload = self._build_payload(
            prepared,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format=response_format,
        )
        log_request_diagnostics(
            logger=logger,
            provider_name=self._provider_name,
            model_name=self._model,
            operation="complete",
            diagnostics=collect_request_diagnostics(
                messages=prepared, payload=payload, response_format=response_format,
            ),
        )

        start = time.monotonic()
        try:
            response = await self._post(payload)
        except ModelConnectionError as e:
            limit = parse_token_limit_from_error(e.body) if e.status_code else None
            if limit is None:
                raise
            logger.info(
                "Model %s reported a %d token context limit; retrying trimmed",
                self._model,
                limit,
            )
            retry_messages = trim_messages_to_token_budget(messages, limit).messages
            payload = dict(payload, messages=[m.to_dict() for m in retry_messages])
            response = await self._post(payload)
        latency = int((time.monotonic() - start) * 1000)

        try:
            data = response.json()
        except ValueError as e:
            raise ModelConnectionError(
                f"Invalid JSON response from {self._model}: {e}", original=e,
            ) from e
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices, list):
            error = data.get("error") if isinstance(data, dict) else None
            detail = error.get("message", "") if isinstance(error, dict) else ""
            raise ModelConnectionError(
                f"Malformed response from {self._model}: missing or empty 'choices'"
                + (f" ({detail})" if detail else ""),
                body=str(detail),
            )
        choice = choices[0] if isinstance(choices[0], dict) else {}
        message = choice.get("message", {})
        if not isinstance(message, dict):
            message = {}

        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            input_tokens=usage_data.get("prompt_tokens", 0),
            output_tokens=usage_data.get("completion_tokens", 0),
            total_tokens=usage_data.get("total_tokens", 0),
        )
        text = _content_text(message.get("content")) or _content_text(choice.get("text"))
        if not text:
            logger.warning(
                "OpenAI-compatible response had empty assistant text: "
                "model=%s provider=%s message_keys=%s",
                self._model,
                self._provider_name,
                sorted(message.keys()),
            )

        return ModelResponse(
            text=text,
            raw=json.dumps(message),
            usage=usage,
            model=self._model,
            latency_ms=latency,
            finish_reason=str(choice.get("finish_reason", "") or "").strip(),
        )

    async def stream(
        self,
        messages: Sequence[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream a completion from OpenAI-compatible endpoint via SSE."""
        prepared = self._prepare_messages(messages)
        request_payload = self._build_payload(
            prepared, temperature=temperature, max_tokens=max_tokens, stream=True,
        )
        log_request_diagnostics(
            logger=logger,
            provider_name=self._provider_name,
            model_name=self._model,
            operation="stream",
            diagnostics=collect_request_diagnostics(
                messages=prepared, payload=request_payload,
            ),
        )
        tried_limit_retry = False

        try:
            while True:
                async with self._client.stream(
                    "POST", "/chat/completions", json=request_payload,
                ) as response:
                    if response.is_error:
                        body_text = await self._http_error_body(response)
                        limit = parse_token_limit_from_error(body_text)
                        if limit is not None and not tried_limit_retry:
                            tried_limit_retry = True
                            retry_messages = trim_messages_to_token_budget(
                                messages, limit,
                            ).messages
                            request_payload = dict(
                                request_payload,
                                messages=[m.to_dict() for m in retry_messages],
                            )
                            continue
                        raise ModelConnectionError(
                            f"Model server returned HTTP "
                            f"{response.status_code}: "
                            f"{body_text}",
                            status_code=response.status_code,
                            body=body_text,
                        )

                    async for line in response.aiter_lines():
                        line = line.strip()
                        if not line or not line.startswith("data:"):
                            continue
                        data_str = line[len("data:"):].strip()
                        if data_str == "[DONE]":
                            yield StreamChunk(text="", done=True)
                            return

                        try:
                            data = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue

                        choice = (data.get("choices") or [{}])[0]
                        delta = choice.get("delta") or choice.get("message") or {}
                        text = delta.get("content") or ""

                        usage = None
                        if data.get("usage"):
                            u = data["usage"]
                            usage = TokenUsage(
                                input_tokens=u.get("prompt_tokens", 0),
                                output_tokens=u.get("completion_tokens", 0),
                                total_tokens=u.get("total_tokens", 0),
                            )

                        if text:
                            yield StreamChunk(text=text, done=False, usage=usage)
                    # Server closed the stream without an explicit [DONE].
                    yield StreamChunk(text="", done=True)
                    return
        except httpx.TransportError as e:
            raise self._transport_error(e) from e

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/models", timeout=5.0)
            return response.status_code == 200
        except (httpx.ConnectError, httpx.TimeoutException):
            return False

    @property
    def name(self) -> str:
        return self._provider_name

    @property
    def model(self) -> str:
        return self._model

    async def close(self) -> None:
        await self._client.aclose()
