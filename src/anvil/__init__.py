"""Anvil: structured-output resilience for local OpenAI-compatible models."""

__version__ = "0.1.0"
