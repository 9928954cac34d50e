"""Next-action selection: choose one safe tool call from a task plan.

Two strategies share the :class:`NextActionStrategy` interface. The
generative one asks the model for a tool call and falls back to the
deterministic :class:`LocalNextAction` on any non-cancellation failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from anvil.engine.compressor import TaskPlan
from anvil.exceptions import InvalidStructuredOutputError, RequestCancelledError
from anvil.models.base import Message
from anvil.structured.protocol import StructuredClient
from anvil.structured.schemas import TOOL_CALL_SCHEMA
from anvil.workspace.project import ProjectContext, script_command, validation_options

logger = logging.getLogger(__name__)

READ_FILE = "read_file"
REQUEST_DIFF = "request_diff"
RUN_VALIDATION_COMMAND = "run_validation_command"

_FILE_TOKEN_RE = re.compile(r"[A-Za-z0-9_./\\-]+\.[A-Za-z0-9]+")
_READ_WORDS = ("read", "open", "review")

_SYSTEM_PROMPT = (
    "You are a planner. Return ONLY valid JSON with one of these shapes: "
    '{"tool":"read_file","path":"..."} or {"tool":"request_diff"} or '
    '{"tool":"run_validation_command","command":"..."}. '
    "Do not include code fences, comments, or extra text. Choose the next single safe action."
)


@dataclass(frozen=True)
class PlannedAction:
    """A single tool call chosen by a strategy."""

    tool: str
    path: str | None = None
    command: str | None = None

    @classmethod
    def read_file(cls, path: str) -> PlannedAction:
        return cls(tool=READ_FILE, path=path)

    @classmethod
    def request_diff(cls) -> PlannedAction:
        return cls(tool=REQUEST_DIFF)

    @classmethod
    def run_validation(cls, command: str) -> PlannedAction:
        return cls(tool=RUN_VALIDATION_COMMAND, command=command)

    @classmethod
    def from_payload(cls, payload: Any) -> PlannedAction:
        if not isinstance(payload, dict):
            raise InvalidStructuredOutputError("Tool call is not a JSON object.")
        tool = payload.get("tool")
        if tool == READ_FILE and isinstance(payload.get("path"), str) and payload["path"].strip():
            return cls.read_file(payload["path"].strip())
        if tool == RUN_VALIDATION_COMMAND and isinstance(payload.get("command"), str) and payload["command"].strip():
            return cls.run_validation(payload["command"].strip())
        if tool == REQUEST_DIFF:
            return cls.request_diff()
        raise InvalidStructuredOutputError(f"Unsupported tool call: {payload!r}")

    def to_dict(self) -> dict[str, str]:
        data = {"tool": self.tool}
        if self.tool == READ_FILE:
            data["path"] = self.path or ""
        elif self.tool == RUN_VALIDATION_COMMAND:
            data["command"] = self.command or ""
        return data

    def describe(self) -> str:
        return " ".join(v for v in (self.tool, self.path, self.command) if v)


@dataclass
class ToolResult:
    """Outcome of executing a PlannedAction."""

    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    ok: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "input": self.input, "output": self.output, "ok": self.ok}


@dataclass
class PlannerInput:
    plan: TaskPlan
    context: ProjectContext
    previous_results: list[ToolResult] = field(default_factory=list)

    @property
    def step_index(self) -> int:
        if self.plan.is_clarification or not self.plan.steps:
            return 0
        return min(len(self.previous_results), len(self.plan.steps) - 1)

    @property
    def current_step(self) -> str | None:
        if self.plan.is_clarification or not self.plan.steps:
            return None
        return self.plan.steps[self.step_index]


def pick_validation_command(step_lower: str, context: ProjectContext) -> str | None:
    """Map a validation-flavoured step to a declared script, test > lint > build."""
    scripts = context.scripts
    if not scripts:
        return None

    script = None
    if "test" in step_lower and scripts.get("test"):
        script = "test"
    elif "lint" in step_lower and scripts.get("lint"):
        script = "lint"
    elif "build" in step_lower and scripts.get("build"):
        script = "build"
    elif "validate" in step_lower or "check" in step_lower:
        script = next((s for s in ("test", "lint", "build") if scripts.get(s)), None)

    if script is None:
        return None
    return script_command(script, context.package_manager)


def pick_file_from_step(step: str, context: ProjectContext) -> str | None:
    """Return the shortest known file matching a file-like token in ``step``."""
    files = [f.replace("\\", "/") for f in context.files]
    tokens = [t.replace("\\", "/") for t in _FILE_TOKEN_RE.findall(step)]
    if "package.json" in step.lower() and "package.json" not in tokens:
        tokens.append("package.json")

    best: str | None = None
    for token in tokens:
        token_lower = token.lower()
        for file in files:
            file_lower = file.lower()
            if file_lower == token_lower or file_lower.endswith(f"/{token_lower}"):
                if best is None or len(file) < len(best):
                    best = file
    return best


def to_relative_if_possible(file_path: str | None, root: str | None) -> str | None:
    if not file_path:
        return None
    if not root:
        return file_path
    try:
        relative = os.path.relpath(file_path, root)
    except ValueError:
        return file_path
    if relative.startswith("..") or os.path.isabs(relative):
        return file_path
    return relative.replace(os.sep, "/")


class NextActionStrategy(ABC):
    """Chooses the next single tool call for a plan."""

    @abstractmethod
    async def next_action(
        self,
        planner_input: PlannerInput,
        *,
        memory_context: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PlannedAction:
        ...


class LocalNextAction(NextActionStrategy):
    """Deterministic next-action choice. Never raises."""

    def choose(self, planner_input: PlannerInput) -> PlannedAction:
        step = planner_input.current_step
        if step is None:
            return PlannedAction.request_diff()

        context = planner_input.context
        step_lower = step.lower()

        command = pick_validation_command(step_lower, context)
        if command:
            return PlannedAction.run_validation(command)

        path = pick_file_from_step(step, context)
        if path:
            return PlannedAction.read_file(path)

        if any(word in step_lower for word in _READ_WORDS):
            active = to_relative_if_possible(context.active_file, context.workspace_root)
            if active:
                return PlannedAction.read_file(active)

        return PlannedAction.request_diff()

    async def next_action(
        self,
        planner_input: PlannerInput,
        *,
        memory_context: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PlannedAction:
        return self.choose(planner_input)


def build_planner_messages(planner_input: PlannerInput, memory_context: str | None = None) -> list[Message]:
    previous = [r.to_dict() for r in planner_input.previous_results]
    commands = [command for _, command in validation_options(planner_input.context)]
    content = (
        f"TaskPlan:\n{json.dumps(planner_input.plan.to_dict(), indent=2)}\n\n"
        f"ProjectContext:\n{json.dumps(planner_input.context.to_dict(), indent=2)}\n\n"
        f"PreviousResults:\n{json.dumps(previous, indent=2)}\n\n"
        f"ValidationCommands: {json.dumps(commands)}\n"
        f"CurrentStepIndex: {planner_input.step_index}\n"
        f"CurrentStep: {planner_input.current_step or 'N/A'}\n"
    )
    if memory_context:
        content += f"\n\nProject memory:\n{memory_context}"
    return [Message.system(_SYSTEM_PROMPT), Message.user(content)]


class GenerativeNextAction(NextActionStrategy):
    """Asks the model for a tool call; falls back to a local strategy."""

    def __init__(self, client: StructuredClient, fallback: LocalNextAction | None = None):
        self._client = client
        self._fallback = fallback or LocalNextAction()

    async def next_action(
        self,
        planner_input: PlannerInput,
        *,
        memory_context: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PlannedAction:
        messages = build_planner_messages(planner_input, memory_context)
        try:
            payload = await self._client.request(
                messages,
                TOOL_CALL_SCHEMA,
                role="plan",
                name="tool_call",
                cancel=cancel,
            )
            return PlannedAction.from_payload(payload)
        except RequestCancelledError:
            raise
        except Exception as e:
            logger.warning("Next-action selection fell back to local planner: %s", e)
            return self._fallback.choose(planner_input)
