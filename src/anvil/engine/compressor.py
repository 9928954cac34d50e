"""Task compression: turn a short instruction into a plan or questions.

The generative path asks the model for a :class:`TaskPlan` through the
structured protocol. When that fails for any reason other than
cancellation, :func:`compress_task_local` produces a deterministic plan.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from anvil.exceptions import InvalidStructuredOutputError, RequestCancelledError
from anvil.models.base import Message
from anvil.structured.protocol import StructuredClient
from anvil.structured.schemas import TASK_PLAN_SCHEMA
from anvil.workspace.project import ProjectContext

logger = logging.getLogger(__name__)

EMPTY_INSTRUCTION_QUESTIONS = (
    "What should be changed or created?",
    "Which part of the project does this apply to?",
    "What is the expected outcome?",
)

AMBIGUOUS_INSTRUCTION_QUESTIONS = (
    "What exactly should be changed or created?",
    "Where in the project should this apply?",
    "What does success look like?",
)

REVIEW_STEP = "Review the provided ProjectContext to understand the current state."
VERIFY_STEP = "Verify the result matches the instruction."

_TOKEN_RE = re.compile(r"[a-z0-9._/\\-]+")
_QUOTED_RE = re.compile(r"[\"'`].+[\"'`]")
_VAGUE_PRONOUN_RE = re.compile(
    r"\b(it|this|that|these|those|them|something|stuff|anything|whatever)\b",
    re.IGNORECASE,
)
_SPLIT_RE = re.compile(
    r"\b(?:and then|then|after that|afterwards|also|and)\b|;|\.(?=\s|$)",
    re.IGNORECASE,
)

_SYSTEM_PROMPT = (
    "You are a task compressor. Return ONLY valid JSON with one of these shapes: "
    '{"kind":"clarification","questions":["..."]} or {"kind":"plan","steps":["..."]}. '
    "Do not include code fences, comments, or extra text. "
    "Ask for clarification if the instruction is ambiguous."
)


@dataclass(frozen=True)
class TaskPlan:
    """Either clarification questions or an ordered list of steps."""

    kind: str
    steps: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)

    @classmethod
    def clarification(cls, questions: list[str] | tuple[str, ...]) -> TaskPlan:
        return cls(kind="clarification", questions=list(questions))

    @classmethod
    def plan(cls, steps: list[str] | tuple[str, ...]) -> TaskPlan:
        return cls(kind="plan", steps=list(steps))

    @property
    def is_clarification(self) -> bool:
        return self.kind == "clarification"

    @classmethod
    def from_payload(cls, payload: Any) -> TaskPlan:
        """Build a TaskPlan from validated JSON, rejecting blank items."""
        if not isinstance(payload, dict):
            raise InvalidStructuredOutputError("Task plan is not a JSON object.")
        kind = payload.get("kind")
        key = {"clarification": "questions", "plan": "steps"}.get(kind)
        if key is None:
            raise InvalidStructuredOutputError(f"Task plan has an invalid kind: {kind!r}")
        items = payload.get(key)
        if not isinstance(items, list) or not items:
            raise InvalidStructuredOutputError(f"Task plan must include a non-empty {key} array.")
        if not all(isinstance(item, str) and item.strip() for item in items):
            raise InvalidStructuredOutputError(f"Task plan {key} must be non-empty strings.")
        if kind == "clarification":
            return cls.clarification(items)
        return cls.plan(items)

    def to_dict(self) -> dict[str, Any]:
        if self.is_clarification:
            return {"kind": self.kind, "questions": list(self.questions)}
        return {"kind": self.kind, "steps": list(self.steps)}


def _is_ambiguous(instruction: str) -> bool:
    tokens = _TOKEN_RE.findall(instruction.lower())
    if len(tokens) < 2:
        return True
    has_quoted = bool(_QUOTED_RE.search(instruction))
    # trailing sentence periods do not make a token path-like
    words = [t.rstrip(".") for t in tokens]
    has_path_like = any("/" in w or "\\" in w or "." in w for w in words)
    has_vague_pronoun = bool(_VAGUE_PRONOUN_RE.search(instruction))
    return has_vague_pronoun and not has_quoted and not has_path_like


def _split_segments(instruction: str) -> list[str]:
    normalized = re.sub(r"\s+", " ", instruction)
    normalized = re.sub(r"[.]+$", "", normalized)
    return [s.strip() for s in _SPLIT_RE.split(normalized) if s.strip()]


def compress_task_local(instruction: str) -> TaskPlan:
    """Deterministic task decomposition. Never raises."""
    trimmed = (instruction or "").strip()
    if not trimmed:
        return TaskPlan.clarification(EMPTY_INSTRUCTION_QUESTIONS)
    if _is_ambiguous(trimmed):
        return TaskPlan.clarification(AMBIGUOUS_INSTRUCTION_QUESTIONS)

    segments = _split_segments(trimmed)
    steps = [REVIEW_STEP]
    if len(segments) <= 1:
        steps.append(f"Carry out the request: {trimmed.rstrip('.')}.")
    else:
        for segment in segments:
            sentence = segment if segment.endswith(".") else f"{segment}."
            steps.append(sentence[0].upper() + sentence[1:])
    steps.append(VERIFY_STEP)
    return TaskPlan.plan(steps)


def build_compress_messages(
    instruction: str,
    context: ProjectContext | None,
    memory_context: str | None = None,
) -> list[Message]:
    context_json = json.dumps(context.to_dict() if context else {}, indent=2)
    content = f"Instruction:\n{instruction}\n\nProjectContext:\n{context_json}"
    if memory_context:
        content += f"\n\nProject memory:\n{memory_context}"
    return [Message.system(_SYSTEM_PROMPT), Message.user(content)]


async def compress_task(
    client: StructuredClient,
    instruction: str,
    context: ProjectContext | None = None,
    *,
    memory_context: str | None = None,
    cancel: asyncio.Event | None = None,
) -> TaskPlan:
    """Ask the model for a TaskPlan, falling back to the local decomposition.

    RequestCancelledError propagates; every other failure activates the
    fallback and is logged.
    """
    trimmed = (instruction or "").strip()
    if not trimmed:
        return TaskPlan.clarification(EMPTY_INSTRUCTION_QUESTIONS)

    messages = build_compress_messages(trimmed, context, memory_context)
    try:
        payload = await client.request(
            messages,
            TASK_PLAN_SCHEMA,
            role="plan",
            name="task_plan",
            cancel=cancel,
        )
        return TaskPlan.from_payload(payload)
    except RequestCancelledError:
        raise
    except Exception as e:
        logger.warning("Task compression fell back to local plan: %s", e)
        return compress_task_local(trimmed)
