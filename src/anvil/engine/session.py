"""One unit of work: plan, gather evidence, verify, remember.

:class:`WorkSession` wires the task compressor, a next-action strategy,
the tool runners, verification and project memory together for a single
instruction. Every run ends with a memory entry recording its outcome.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from anvil.config import Config
from anvil.engine.compressor import TaskPlan, compress_task
from anvil.engine.planner import (
    READ_FILE,
    RUN_VALIDATION_COMMAND,
    GenerativeNextAction,
    NextActionStrategy,
    PlannedAction,
    PlannerInput,
    ToolResult,
)
from anvil.engine.verification import VerificationResult, verify_changes
from anvil.exceptions import RequestCancelledError, ToolError
from anvil.state.memory import (
    MemoryEntry,
    MemoryOptions,
    MemoryStore,
    ValidationRecord,
    VerificationRecord,
)
from anvil.structured.protocol import StructuredClient
from anvil.tools.shell import run_command
from anvil.utils.concurrency import run_blocking_io
from anvil.workspace.project import ProjectContext, harvest_context

logger = logging.getLogger(__name__)

GIT_DIFF_COMMAND = "git diff"
_DIFF_FILE_RE = re.compile(r"^diff --git a/(\S+) b/", re.MULTILINE)


@dataclass
class WorkReport:
    """Everything one run produced."""

    instruction: str
    plan: TaskPlan | None = None
    actions: list[PlannedAction] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    verification: VerificationResult | None = None
    verification_error: str | None = None
    outcome: str = "completed"
    memory_entry: MemoryEntry | None = None

    @property
    def verification_status(self) -> str:
        return self.verification.status if self.verification else "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "instruction": self.instruction,
            "plan": self.plan.to_dict() if self.plan else None,
            "actions": [
                {"action": a.to_dict(), "ok": r.ok, "output": r.output}
                for a, r in zip(self.actions, self.results)
            ],
            "verification": self.verification.to_dict() if self.verification else None,
            "verificationStatus": self.verification_status,
            "verificationError": self.verification_error,
            "outcome": self.outcome,
        }


def _read_bounded(path: Path, limit: int) -> str:
    with open(path, encoding="utf-8", errors="replace") as f:
        content = f.read(limit + 1)
    if len(content) > limit:
        return content[:limit] + "\n... (file truncated)"
    return content


def changed_files_from_diff(diff: str) -> list[str]:
    return sorted(set(_DIFF_FILE_RE.findall(diff)))


class WorkSession:
    """Runs the work-unit pipeline for one workspace."""

    def __init__(
        self,
        config: Config,
        client: StructuredClient,
        workspace_root: Path,
        *,
        active_file: Path | None = None,
        strategy: NextActionStrategy | None = None,
        memory: MemoryStore | None = None,
    ):
        self._config = config
        self._client = client
        self._root = workspace_root.resolve()
        self._active_file = active_file
        self._strategy = strategy or GenerativeNextAction(client)
        self._memory = memory or MemoryStore(
            self._root, MemoryOptions.from_config(config.memory), client,
        )

    @property
    def memory(self) -> MemoryStore:
        return self._memory

    async def run(self, instruction: str, *, cancel: asyncio.Event | None = None) -> WorkReport:
        """Run one instruction end to end and record it in memory.

        Cancellation and unexpected errors are recorded with their outcome
        and then re-raised.
        """
        report = WorkReport(instruction=instruction)
        try:
            await self._run(report, cancel)
        except (RequestCancelledError, asyncio.CancelledError):
            report.outcome = "cancelled"
            await self._remember(report)
            raise
        except Exception:
            report.outcome = "error"
            await self._remember(report)
            raise
        report.memory_entry = await self._remember(report)
        return report

    async def _run(self, report: WorkReport, cancel: asyncio.Event | None) -> None:
        memory_context = await run_blocking_io(self._memory.load_context)
        context = await run_blocking_io(harvest_context, self._root, self._active_file)

        report.plan = await compress_task(
            self._client, report.instruction, context,
            memory_context=memory_context, cancel=cancel,
        )
        if report.plan.is_clarification:
            logger.info("Instruction needs clarification; skipping actions")
            return

        max_actions = min(self._config.session.max_actions, len(report.plan.steps))
        for _ in range(max_actions):
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError("Work session was cancelled")
            planner_input = PlannerInput(
                plan=report.plan, context=context, previous_results=list(report.results),
            )
            action = await self._strategy.next_action(
                planner_input, memory_context=memory_context, cancel=cancel,
            )
            logger.info("Executing %s", action.describe())
            report.actions.append(action)
            report.results.append(await self.execute(action, context))

        try:
            report.verification = await verify_changes(
                self._client,
                report.instruction,
                self._change_summary(report),
                self._validation_output(report),
                cancel=cancel,
            )
        except RequestCancelledError:
            raise
        except Exception as e:
            logger.warning("Verification unavailable: %s", e)
            report.verification_error = str(e)

    async def execute(self, action: PlannedAction, context: ProjectContext) -> ToolResult:
        """Execute one action. Tool failures become unsuccessful results."""
        try:
            if action.tool == READ_FILE:
                path = self._resolve_inside_root(action.path or "")
                output = await run_blocking_io(
                    _read_bounded, path, self._config.session.read_limit_chars,
                )
                return ToolResult(tool=action.tool, input={"path": action.path}, output=output)

            command = action.command if action.tool == RUN_VALIDATION_COMMAND else GIT_DIFF_COMMAND
            result = await run_command(
                command or "",
                self._root,
                timeout=self._config.session.command_timeout_seconds,
            )
            return ToolResult(
                tool=action.tool,
                input={"command": command},
                output=result.output,
                ok=result.ok,
            )
        except (ToolError, OSError) as e:
            logger.warning("Action %s failed: %s", action.describe(), e)
            return ToolResult(tool=action.tool, input=action.to_dict(), output=str(e), ok=False)

    def _resolve_inside_root(self, relative: str) -> Path:
        candidate = (self._root / relative).resolve()
        if not candidate.is_relative_to(self._root):
            raise ToolError(f"Path escapes the workspace: {relative}")
        if not candidate.is_file():
            raise ToolError(f"File not found: {relative}")
        return candidate

    def _change_summary(self, report: WorkReport) -> str:
        diffs = [r.output for r in report.results if r.tool not in (READ_FILE, RUN_VALIDATION_COMMAND) and r.output]
        if diffs:
            return diffs[-1]
        return "\n".join(f"- {a.describe()}" for a in report.actions)

    def _validation_output(self, report: WorkReport) -> str | None:
        outputs = [
            f"$ {r.input.get('command')} (exit {'ok' if r.ok else 'failed'})\n{r.output}"
            for r in report.results
            if r.tool == RUN_VALIDATION_COMMAND
        ]
        return "\n\n".join(outputs) or None

    def _build_entry(self, report: WorkReport) -> MemoryEntry:
        files: set[str] = set()
        validation = None
        for action, result in zip(report.actions, report.results):
            if action.tool == RUN_VALIDATION_COMMAND:
                validation = ValidationRecord(ok=result.ok, command=action.command, label=action.command)
            elif action.tool != READ_FILE and result.ok:
                files.update(changed_files_from_diff(result.output))

        verification = None
        if report.verification is not None:
            verification = VerificationRecord(
                status=report.verification.status,
                confidence=report.verification.confidence,
                issues=list(report.verification.issues),
            )
        elif report.plan is not None and not report.plan.is_clarification:
            verification = VerificationRecord(status="unknown")

        if report.plan is None:
            summary = None
        elif report.plan.is_clarification:
            summary = "Needs clarification: " + " ".join(report.plan.questions)
        else:
            summary = f"{len(report.actions)} action(s); verification {report.verification_status}"

        return MemoryEntry(
            instruction=report.instruction,
            intent=report.plan.steps[1] if report.plan and len(report.plan.steps) > 1 else None,
            files_changed=sorted(files),
            summary=summary,
            validation=validation,
            verification=verification,
            outcome=report.outcome,
        )

    async def _remember(self, report: WorkReport) -> MemoryEntry | None:
        entry = self._build_entry(report)
        report.memory_entry = entry
        try:
            await self._memory.append(entry, use_model=report.outcome != "cancelled")
        except (OSError, RequestCancelledError) as e:
            logger.warning("Could not record memory entry: %s", e)
            return None
        return entry
