"""Persistent project memory with bounded size.

Each completed unit of work appends a :class:`MemoryEntry` to
``<root>/.anvil/memory.json``. When the entry count or serialized size
passes its ceiling, the oldest entries are folded into a single compacted
summary so the file (and the prompt context built from it) stays bounded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from anvil.config import MemoryConfig
from anvil.exceptions import RequestCancelledError, StateError
from anvil.models.base import Message
from anvil.structured.protocol import StructuredClient
from anvil.structured.schemas import MEMORY_SUMMARY_SCHEMA
from anvil.utils.concurrency import run_blocking_io

logger = logging.getLogger(__name__)

MEMORY_VERSION = 1
MEMORY_DIR = ".anvil"
MEMORY_FILE = "memory.json"
TRUNCATED_MEMORY_MARKER = "\n... (truncated memory)"
TRIMMED_SUMMARY_MARKER = "... (older memory trimmed)"
SUMMARY_SHARE = 0.5
EMPTY_SUMMARY = "Compacted memory unavailable."

OUTCOMES = ("completed", "cancelled", "error")

_SUMMARY_SYSTEM_PROMPT = (
    "You are compacting project memory. Summarize the key decisions, constraints, "
    "and files changed. Return concise bullets only. "
    'Respond as JSON: {"summary": "..."}.'
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if str(v)]


@dataclass
class ValidationRecord:
    ok: bool
    command: str | None = None
    label: str | None = None


@dataclass
class VerificationRecord:
    status: str = "unknown"
    confidence: str | None = None
    issues: list[str] = field(default_factory=list)


@dataclass
class MemoryEntry:
    """One unit of work, as remembered for later prompts."""

    instruction: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: str = field(default_factory=_now)
    intent: str | None = None
    decisions: list[str] = field(default_factory=list)
    files_changed: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)
    summary: str | None = None
    validation: ValidationRecord | None = None
    verification: VerificationRecord | None = None
    outcome: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "instruction": self.instruction,
        }
        if self.intent:
            data["intent"] = self.intent
        if self.decisions:
            data["decisions"] = list(self.decisions)
        if self.files_changed:
            data["filesChanged"] = list(self.files_changed)
        if self.constraints:
            data["constraints"] = list(self.constraints)
        if self.summary:
            data["summary"] = self.summary
        if self.validation is not None:
            data["validation"] = {
                "ok": self.validation.ok,
                "command": self.validation.command,
                "label": self.validation.label,
            }
        if self.verification is not None:
            data["verification"] = {
                "status": self.verification.status,
                "confidence": self.verification.confidence,
                "issues": list(self.verification.issues),
            }
        if self.outcome:
            data["outcome"] = self.outcome
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryEntry:
        if not isinstance(data, dict) or not isinstance(data.get("instruction"), str):
            raise StateError(f"Invalid memory entry: {data!r}")
        validation = data.get("validation")
        verification = data.get("verification")
        outcome = data.get("outcome")
        return cls(
            instruction=data["instruction"],
            id=str(data.get("id") or uuid.uuid4().hex[:12]),
            created_at=str(data.get("createdAt") or ""),
            intent=data.get("intent") or None,
            decisions=_str_list(data.get("decisions")),
            files_changed=_str_list(data.get("filesChanged")),
            constraints=_str_list(data.get("constraints")),
            summary=data.get("summary") or None,
            validation=ValidationRecord(
                ok=bool(validation.get("ok")),
                command=validation.get("command"),
                label=validation.get("label"),
            ) if isinstance(validation, dict) else None,
            verification=VerificationRecord(
                status=str(verification.get("status") or "unknown"),
                confidence=verification.get("confidence"),
                issues=_str_list(verification.get("issues")),
            ) if isinstance(verification, dict) else None,
            outcome=outcome if outcome in OUTCOMES else None,
        )


@dataclass
class CompactedSummary:
    created_at: str
    entries: int
    summary: str

    def to_dict(self) -> dict[str, Any]:
        return {"createdAt": self.created_at, "entries": self.entries, "summary": self.summary}


@dataclass
class MemoryState:
    entries: list[MemoryEntry] = field(default_factory=list)
    updated_at: str = field(default_factory=_now)
    compacted: CompactedSummary | None = None
    version: int = MEMORY_VERSION

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"version": self.version, "updatedAt": self.updated_at}
        if self.compacted is not None:
            data["compacted"] = self.compacted.to_dict()
        data["entries"] = [e.to_dict() for e in self.entries]
        return data

    def serialized_size(self) -> int:
        return len(json.dumps(self.to_dict(), separators=(",", ":")))

    @classmethod
    def from_dict(cls, data: Any) -> MemoryState:
        """Parse a memory document. Raises StateError on any mismatch."""
        if not isinstance(data, dict) or data.get("version") != MEMORY_VERSION:
            raise StateError("Unsupported memory version")
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, list):
            raise StateError("Memory entries must be a list")
        compacted = data.get("compacted")
        if compacted is not None:
            if not isinstance(compacted, dict) or not isinstance(compacted.get("summary"), str):
                raise StateError("Invalid compacted memory block")
            compacted = CompactedSummary(
                created_at=str(compacted.get("createdAt") or ""),
                entries=int(compacted.get("entries") or 0),
                summary=compacted["summary"],
            )
        return cls(
            entries=[MemoryEntry.from_dict(e) for e in raw_entries],
            updated_at=str(data.get("updatedAt") or _now()),
            compacted=compacted,
        )


@dataclass(frozen=True)
class MemoryOptions:
    max_entries: int = 20
    max_chars: int = 12_000
    compaction_target_entries: int = 8
    include_compacted: bool = True

    @classmethod
    def from_config(cls, config: MemoryConfig) -> MemoryOptions:
        return cls(
            max_entries=config.max_entries,
            max_chars=config.max_chars,
            compaction_target_entries=config.compaction_target_entries,
            include_compacted=config.include_compacted,
        )


def memory_file_path(root: Path) -> Path:
    return root / MEMORY_DIR / MEMORY_FILE


def load_memory_state(root: Path) -> MemoryState | None:
    """Load memory from disk. Missing, unreadable or foreign files count as absent."""
    path = memory_file_path(root)
    if not path.exists():
        return None
    try:
        return MemoryState.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, TypeError, ValueError, StateError) as e:
        logger.warning("Ignoring memory file %s: %s", path, e)
        return None


def build_memory_context(state: MemoryState, options: MemoryOptions) -> str | None:
    """Render memory for prompt injection, newest entries first."""
    lines: list[str] = []
    if options.include_compacted and state.compacted and state.compacted.summary:
        lines.append("Compacted memory:")
        lines.append(state.compacted.summary.strip())

    recent = state.entries[-options.max_entries:] if options.max_entries > 0 else []
    for entry in reversed(recent):
        lines.append(f"[{entry.created_at}] {entry.instruction}")
        if entry.intent:
            lines.append(f"Intent: {entry.intent}")
        if entry.files_changed:
            lines.append(f"Files changed: {', '.join(entry.files_changed)}")
        if entry.decisions:
            lines.append(f"Decisions: {' | '.join(entry.decisions)}")
        if entry.constraints:
            lines.append(f"Constraints: {' | '.join(entry.constraints)}")
        if entry.summary:
            lines.append(f"Summary: {entry.summary}")

    if not lines:
        return None
    context = "\n".join(lines)
    if len(context) > options.max_chars:
        context = context[:options.max_chars] + TRUNCATED_MEMORY_MARKER
    return context.strip()


def fallback_summary(entries: list[MemoryEntry], previous: str | None = None) -> str:
    """Deterministic compaction summary: one bullet per entry."""
    bullets = []
    for entry in entries:
        parts = [entry.instruction]
        if entry.files_changed:
            parts.append(f"files: {', '.join(entry.files_changed)}")
        if entry.decisions:
            parts.append(f"decisions: {' | '.join(entry.decisions)}")
        bullets.append(f"- {' | '.join(parts)}")
    sections = [s for s in ((previous or "").strip(), "\n".join(bullets)) if s]
    return "\n".join(sections) or EMPTY_SUMMARY


def _serialized_len(text: str) -> int:
    return len(json.dumps(text)) - 2


def cap_summary(summary: str, limit: int) -> str:
    """Fit ``summary`` into ``limit`` serialized chars, dropping the oldest lines first."""
    if _serialized_len(summary) <= limit:
        return summary
    lines = [line for line in summary.splitlines() if line != TRIMMED_SUMMARY_MARKER]
    while lines:
        candidate = "\n".join([TRIMMED_SUMMARY_MARKER, *lines])
        if _serialized_len(candidate) <= limit:
            return candidate
        lines.pop(0)
    return TRIMMED_SUMMARY_MARKER if _serialized_len(TRIMMED_SUMMARY_MARKER) <= limit else ""


def _entry_prompt(entry: MemoryEntry) -> str:
    lines = [f"Instruction: {entry.instruction}"]
    if entry.intent:
        lines.append(f"Intent: {entry.intent}")
    if entry.files_changed:
        lines.append(f"Files: {', '.join(entry.files_changed)}")
    if entry.decisions:
        lines.append(f"Decisions: {' | '.join(entry.decisions)}")
    if entry.constraints:
        lines.append(f"Constraints: {' | '.join(entry.constraints)}")
    if entry.summary:
        lines.append(f"Summary: {entry.summary}")
    return "\n".join(lines)


def build_summary_messages(entries: list[MemoryEntry], previous: str | None = None) -> list[Message]:
    body = "\n\n".join(_entry_prompt(e) for e in entries)
    content = f"Project memory entries:\n\n{body}"
    if previous:
        content = f"Previously compacted memory:\n{previous.strip()}\n\n{content}"
    return [Message.system(_SUMMARY_SYSTEM_PROMPT), Message.user(content)]


def _write_state(path: Path, state: MemoryState) -> None:
    """Atomic write: write to temp file, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(state.to_dict(), indent=2)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".json.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except Exception:
        os.unlink(tmp_path)
        raise


class MemoryStore:
    """Reads, appends and compacts the memory file for one project root."""

    def __init__(
        self,
        root: Path,
        options: MemoryOptions | None = None,
        client: StructuredClient | None = None,
    ):
        self._root = root
        self._options = options or MemoryOptions()
        self._client = client

    @property
    def path(self) -> Path:
        return memory_file_path(self._root)

    @property
    def options(self) -> MemoryOptions:
        return self._options

    def load(self) -> MemoryState | None:
        return load_memory_state(self._root)

    def load_context(self) -> str | None:
        state = self.load()
        if state is None:
            return None
        return build_memory_context(state, self._options)

    async def append(
        self,
        entry: MemoryEntry,
        *,
        cancel: asyncio.Event | None = None,
        use_model: bool = True,
    ) -> MemoryState:
        """Append ``entry``, compacting older entries when a ceiling is passed.

        With ``use_model=False`` a due compaction uses the deterministic
        summary and makes no backend call.
        """
        state = await run_blocking_io(self.load) or MemoryState()
        state.entries.append(entry)
        state.updated_at = _now()
        await self.compact_if_needed(state, cancel=cancel, use_model=use_model)
        await run_blocking_io(_write_state, self.path, state)
        return state

    def needs_compaction(self, state: MemoryState) -> bool:
        return (
            len(state.entries) > self._options.max_entries
            or state.serialized_size() > self._options.max_chars
        )

    async def compact_if_needed(
        self,
        state: MemoryState,
        *,
        cancel: asyncio.Event | None = None,
        use_model: bool = True,
    ) -> bool:
        if not self.needs_compaction(state):
            return False
        target = max(1, self._options.compaction_target_entries)
        if len(state.entries) <= target:
            return False

        to_compact = state.entries[:-target]
        remaining = state.entries[-target:]
        previous = state.compacted.summary if state.compacted else None
        if use_model:
            summary = await self.summarize(to_compact, previous, cancel=cancel)
        else:
            summary = fallback_summary(to_compact, previous)

        state.compacted = CompactedSummary(created_at=_now(), entries=len(to_compact), summary="")
        state.entries = remaining
        room = self._options.max_chars - state.serialized_size()
        limit = min(room, int(self._options.max_chars * SUMMARY_SHARE))
        state.compacted.summary = cap_summary(summary, max(0, limit))
        logger.info("Compacted %d memory entries, %d remain", len(to_compact), len(remaining))
        return True

    async def summarize(
        self,
        entries: list[MemoryEntry],
        previous: str | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> str:
        if self._client is None:
            return fallback_summary(entries, previous)
        try:
            payload = await self._client.request(
                build_summary_messages(entries, previous),
                MEMORY_SUMMARY_SCHEMA,
                role="summary",
                name="memory_summary",
                cancel=cancel,
            )
            summary = str(payload.get("summary") or "").strip()
            if summary:
                return summary
            logger.warning("Memory summary was empty, using deterministic summary")
        except RequestCancelledError:
            raise
        except Exception as e:
            logger.warning("Memory compaction fell back to deterministic summary: %s", e)
        return fallback_summary(entries, previous)
