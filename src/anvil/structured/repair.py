"""Recovery parsing for near-valid JSON from model responses.

Models frequently return correct JSON wrapped in a code fence or a sentence
of prose, or with literal newlines inside string values. The repair pass
targets exactly those cases; it is not a general JSON grammar corrector.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any

from anvil.exceptions import InvalidStructuredOutputError

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_STRUCTURAL_AFTER_STRING = frozenset(",}]:")
_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t"}


class ScanState(Enum):
    OUTSIDE_STRING = "outside"
    INSIDE_STRING = "inside"
    ESCAPE_PENDING = "escape"


def extract_fenced(content: str) -> str:
    """Return the interior of the first fenced code block, or the text itself."""
    match = _FENCE_RE.search(content)
    return match.group(1).strip() if match else content


def _peek_non_whitespace(text: str, start: int) -> str | None:
    for index in range(start, len(text)):
        if not text[index].isspace():
            return text[index]
    return None


def scan_and_escape(text: str) -> str:
    """Escape string content a strict JSON parser would reject.

    Inside strings: raw newlines, carriage returns and tabs are escaped, and a
    quote not followed by ``, } ] :`` (or end of text) is treated as literal
    content. Outside strings: commas directly before ``}`` or ``]`` are dropped.
    """
    out: list[str] = []
    state = ScanState.OUTSIDE_STRING

    for index, char in enumerate(text):
        if state == ScanState.OUTSIDE_STRING:
            if char == '"':
                state = ScanState.INSIDE_STRING
            elif char == ",":
                if _peek_non_whitespace(text, index + 1) in ("}", "]"):
                    continue
            out.append(char)
            continue

        if state == ScanState.ESCAPE_PENDING:
            state = ScanState.INSIDE_STRING
            out.append(char)
            continue

        if char == "\\":
            state = ScanState.ESCAPE_PENDING
            out.append(char)
            continue

        if char == '"':
            following = _peek_non_whitespace(text, index + 1)
            if following is not None and following not in _STRUCTURAL_AFTER_STRING:
                out.append('\\"')
                continue
            state = ScanState.OUTSIDE_STRING
            out.append(char)
            continue

        out.append(_CONTROL_ESCAPES.get(char, char))

    return "".join(out)


def repair_json(text: str) -> str:
    """Trim prose around the outermost object, then run the escaping scanner."""
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]
    return scan_and_escape(text)


def parse_structured_text(content: str) -> Any:
    """Parse the single JSON value expected in a model response.

    Raises InvalidStructuredOutputError carrying the first parse error when
    neither the direct parse nor the repaired parse succeeds.
    """
    stripped = (content or "").strip()
    if not stripped:
        raise InvalidStructuredOutputError("No content returned by the model.")

    raw = extract_fenced(stripped)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        first_error = error

    repaired = repair_json(raw)
    if repaired != raw:
        try:
            return json.loads(repaired)
        except json.JSONDecodeError:
            pass

    raise InvalidStructuredOutputError(
        f"Invalid JSON from model: {first_error}", original=first_error,
    )
