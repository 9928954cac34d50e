"""Tests for recovery parsing of near-valid JSON."""

from __future__ import annotations

import json

import pytest

from anvil.exceptions import InvalidStructuredOutputError
from anvil.structured.repair import (
    extract_fenced,
    parse_structured_text,
    repair_json,
    scan_and_escape,
)


class TestParseStructuredText:
    def test_plain_json(self):
        assert parse_structured_text('{"kind": "plan", "steps": ["a"]}') == {
            "kind": "plan",
            "steps": ["a"],
        }

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"tool": "request_diff"}\n```\nDone.'
        assert parse_structured_text(text) == {"tool": "request_diff"}

    def test_fence_without_language(self):
        assert parse_structured_text('```\n{"a": 1}\n```') == {"a": 1}

    def test_prose_around_object(self):
        text = 'Sure! The answer is {"status": "pass", "issues": []} as requested.'
        assert parse_structured_text(text) == {"status": "pass", "issues": []}

    def test_raw_newline_inside_string_survives(self):
        text = '{"summary": "line one\nline two"}'
        assert parse_structured_text(text) == {"summary": "line one\nline two"}

    def test_raw_tab_inside_string(self):
        assert parse_structured_text('{"a": "x\ty"}') == {"a": "x\ty"}

    def test_trailing_commas_removed(self):
        text = '{"steps": ["a", "b",], "kind": "plan",}'
        assert parse_structured_text(text) == {"steps": ["a", "b"], "kind": "plan"}

    def test_unescaped_inner_quote(self):
        text = '{"summary": "renamed "foo" to bar"}'
        assert parse_structured_text(text) == {"summary": 'renamed "foo" to bar'}

    def test_conformant_value_unchanged_by_repair(self):
        value = {"kind": "plan", "steps": ["Edit src/a.ts, then b", "Run: tests"]}
        text = json.dumps(value)
        assert parse_structured_text(f"prefix {text} suffix") == value

    def test_empty_content_raises(self):
        with pytest.raises(InvalidStructuredOutputError, match="No content"):
            parse_structured_text("   ")

    def test_unrepairable_carries_original_error(self):
        with pytest.raises(InvalidStructuredOutputError) as exc_info:
            parse_structured_text("definitely not json")
        assert isinstance(exc_info.value.original, json.JSONDecodeError)


class TestRepairHelpers:
    def test_extract_fenced_without_fence_returns_input(self):
        assert extract_fenced("no fence") == "no fence"

    def test_repair_trims_to_outer_braces(self):
        assert repair_json('noise {"a": 1} noise') == '{"a": 1}'

    def test_escaped_characters_left_alone(self):
        text = '{"a": "already \\"quoted\\" and \\n escaped"}'
        assert scan_and_escape(text) == text

    def test_commas_inside_strings_kept(self):
        text = '{"a": "x,}"}'
        assert scan_and_escape(text) == text
