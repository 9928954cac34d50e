"""Shared test fixtures for Anvil."""

from __future__ import annotations

from pathlib import Path

import pytest

from anvil.config import (
    Config,
    MemoryConfig,
    ModelConfig,
    SessionConfig,
    StructuredConfig,
)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test workspace."""
    return tmp_path


@pytest.fixture
def config() -> Config:
    """Provide a test configuration with small ceilings."""
    return Config(
        model=ModelConfig(endpoint="http://127.0.0.1:9999/v1", model="test-model"),
        structured=StructuredConfig(max_retries=2),
        memory=MemoryConfig(max_entries=5, max_chars=12_000, compaction_target_entries=3),
        session=SessionConfig(max_actions=4, read_limit_chars=200, command_timeout_seconds=30),
    )
