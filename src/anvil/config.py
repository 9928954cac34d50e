"""Configuration loader for Anvil.

Loads from anvil.toml with sensible defaults when file is absent, then
applies ``ANVIL_LLM_*`` environment overrides. Configuration is loaded
once at startup and passed via dependency injection.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_LLM_ENDPOINT = "http://127.0.0.1:8000/v1"
DEFAULT_LLM_MODEL = "Qwen/Qwen2.5-Coder-32B-Instruct-AWQ"
DEFAULT_TIMEOUT_SECONDS = 30.0


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class ModelConfig:
    """Connection settings for the OpenAI-compatible backend."""

    endpoint: str = DEFAULT_LLM_ENDPOINT
    model: str = DEFAULT_LLM_MODEL
    api_key: str = ""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_input_tokens: int | None = None
    temperature: float = 0.0

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"ModelConfig(model={self.model!r}, endpoint={self.endpoint!r}, "
            f"api_key={key_display!r})"
        )


@dataclass(frozen=True)
class RoutingConfig:
    """Optional per-role model overrides (same endpoint, different model)."""

    plan: str = ""
    verify: str = ""
    summary: str = ""

    def model_for(self, role: str) -> str:
        return str(getattr(self, role, "") or "").strip()


@dataclass(frozen=True)
class StructuredConfig:
    max_retries: int = 2


@dataclass(frozen=True)
class MemoryConfig:
    max_entries: int = 20
    max_chars: int = 12_000
    compaction_target_entries: int = 8
    include_compacted: bool = True


@dataclass(frozen=True)
class SessionConfig:
    max_actions: int = 4
    read_limit_chars: int = 20_000
    command_timeout_seconds: float = 300.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level Anvil configuration."""

    model: ModelConfig = field(default_factory=ModelConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    structured: StructuredConfig = field(default_factory=StructuredConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _positive_int(value: object) -> int | None:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _positive_float(value: object, default: float) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def apply_env_overrides(config: Config, environ: Mapping[str, str] | None = None) -> Config:
    """Overlay ``ANVIL_LLM_*`` environment variables onto a loaded config."""
    env = os.environ if environ is None else environ
    model = config.model

    endpoint = env.get("ANVIL_LLM_ENDPOINT", "").strip()
    if endpoint:
        model = replace(model, endpoint=endpoint)
    model_name = env.get("ANVIL_LLM_MODEL", "").strip()
    if model_name:
        model = replace(model, model=model_name)
    api_key = env.get("ANVIL_LLM_API_KEY", "").strip()
    if api_key:
        model = replace(model, api_key=api_key)
    if env.get("ANVIL_LLM_TIMEOUT_SECONDS"):
        model = replace(
            model,
            timeout_seconds=_positive_float(
                env["ANVIL_LLM_TIMEOUT_SECONDS"], model.timeout_seconds,
            ),
        )
    if env.get("ANVIL_LLM_MAX_INPUT_TOKENS"):
        model = replace(
            model,
            max_input_tokens=_positive_int(env["ANVIL_LLM_MAX_INPUT_TOKENS"]),
        )

    routing = config.routing
    for role in ("plan", "verify", "summary"):
        override = env.get(f"ANVIL_LLM_MODEL_{role.upper()}", "").strip()
        if override:
            routing = replace(routing, **{role: override})

    return replace(config, model=model, routing=routing)


def load_config(path: Path | None = None, *, use_env: bool = True) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for anvil.toml in current directory then ~/.anvil/.
    Returns default config (plus environment overrides) if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "anvil.toml",
            Path.home() / ".anvil" / "anvil.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        config = Config()
        return apply_env_overrides(config) if use_env else config

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    model_data = raw.get("model", {})
    try:
        temperature = float(model_data.get("temperature", 0.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"model.temperature must be a number: {e}") from e
    model = ModelConfig(
        endpoint=model_data.get("endpoint", DEFAULT_LLM_ENDPOINT),
        model=model_data.get("model", DEFAULT_LLM_MODEL),
        api_key=str(model_data.get("api_key", "") or "").strip(),
        timeout_seconds=_positive_float(
            model_data.get("timeout_seconds"), DEFAULT_TIMEOUT_SECONDS,
        ),
        max_input_tokens=_positive_int(model_data.get("max_input_tokens")),
        temperature=temperature,
    )

    routing_data = raw.get("routing", {})
    routing = RoutingConfig(
        plan=routing_data.get("plan", ""),
        verify=routing_data.get("verify", ""),
        summary=routing_data.get("summary", ""),
    )

    structured_data = raw.get("structured", {})
    try:
        max_retries = max(0, int(structured_data.get("max_retries", 2)))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"structured.max_retries must be an integer: {e}") from e
    structured = StructuredConfig(max_retries=max_retries)

    mem_data = raw.get("memory", {})
    memory = MemoryConfig(
        max_entries=_positive_int(mem_data.get("max_entries")) or 20,
        max_chars=_positive_int(mem_data.get("max_chars")) or 12_000,
        compaction_target_entries=(
            _positive_int(mem_data.get("compaction_target_entries")) or 8
        ),
        include_compacted=bool(mem_data.get("include_compacted", True)),
    )

    session_data = raw.get("session", {})
    session = SessionConfig(
        max_actions=_positive_int(session_data.get("max_actions")) or 4,
        read_limit_chars=_positive_int(session_data.get("read_limit_chars")) or 20_000,
        command_timeout_seconds=_positive_float(
            session_data.get("command_timeout_seconds"), 300.0,
        ),
    )

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(level=str(log_data.get("level", "INFO")).upper())

    config = Config(
        model=model,
        routing=routing,
        structured=structured,
        memory=memory,
        session=session,
        logging=logging_cfg,
    )
    return apply_env_overrides(config) if use_env else config
