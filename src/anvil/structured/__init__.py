"""Structured JSON requests: repair parsing, schemas and the retry protocol."""

from anvil.structured.protocol import StructuredClient, request_structured
from anvil.structured.repair import parse_structured_text

__all__ = ["StructuredClient", "parse_structured_text", "request_structured"]
