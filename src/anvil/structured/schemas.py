"""Shared JSON schemas for structured model responses."""

from __future__ import annotations

TASK_PLAN_SCHEMA: dict = {
    "oneOf": [
        {
            "type": "object",
            "properties": {
                "kind": {"const": "clarification"},
                "questions": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1,
                },
            },
            "required": ["kind", "questions"],
            "additionalProperties": False,
        },
        {
            "type": "object",
            "properties": {
                "kind": {"const": "plan"},
                "steps": {
                    "type": "array",
                    "items": {"type": "string", "minLength": 1},
                    "minItems": 1,
                },
            },
            "required": ["kind", "steps"],
            "additionalProperties": False,
        },
    ]
}

TOOL_CALL_SCHEMA: dict = {
    "oneOf": [
        {
            "type": "object",
            "properties": {
                "tool": {"const": "read_file"},
                "path": {"type": "string", "minLength": 1},
            },
            "required": ["tool", "path"],
            "additionalProperties": False,
        },
        {
            "type": "object",
            "properties": {"tool": {"const": "request_diff"}},
            "required": ["tool"],
            "additionalProperties": False,
        },
        {
            "type": "object",
            "properties": {
                "tool": {"const": "run_validation_command"},
                "command": {"type": "string", "minLength": 1},
            },
            "required": ["tool", "command"],
            "additionalProperties": False,
        },
    ]
}

VERIFICATION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "status": {"type": "string", "enum": ["pass", "fail"]},
        "issues": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "string", "enum": ["low", "medium", "high"]},
    },
    "required": ["status", "issues"],
    "additionalProperties": False,
}

MEMORY_SUMMARY_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "summary": {"type": "string", "minLength": 1},
    },
    "required": ["summary"],
    "additionalProperties": False,
}
