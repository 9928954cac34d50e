"""Tests for project memory and its compaction policy."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from anvil.exceptions import RequestCancelledError
from anvil.state.memory import (
    TRIMMED_SUMMARY_MARKER,
    MemoryEntry,
    MemoryOptions,
    MemoryState,
    MemoryStore,
    build_memory_context,
    cap_summary,
    fallback_summary,
    load_memory_state,
    memory_file_path,
)
from tests.fakes import FakeProvider, make_client

OPTIONS = MemoryOptions(max_entries=5, max_chars=100_000, compaction_target_entries=3)


def _entry(n: int, **overrides) -> MemoryEntry:
    return MemoryEntry(
        instruction=f"task {n}",
        created_at=f"2026-01-0{n % 9 + 1}T00:00:00+00:00",
        **overrides,
    )


def _seed(root: Path, count: int) -> None:
    state = MemoryState(entries=[_entry(i) for i in range(count)])
    path = memory_file_path(root)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps(state.to_dict()), encoding="utf-8")


class TestLoadMemoryState:
    def test_missing_file(self, tmp_path):
        assert load_memory_state(tmp_path) is None

    def test_unsupported_version_treated_as_absent(self, tmp_path):
        path = memory_file_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"version": 2, "entries": []}), encoding="utf-8")
        assert load_memory_state(tmp_path) is None

    def test_structural_mismatch_treated_as_absent(self, tmp_path):
        path = memory_file_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"version": 1, "entries": {"a": 1}}), encoding="utf-8")
        assert load_memory_state(tmp_path) is None

    def test_corrupt_json_treated_as_absent(self, tmp_path):
        path = memory_file_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        assert load_memory_state(tmp_path) is None


class TestAppend:
    @pytest.mark.asyncio
    async def test_first_append_creates_file(self, tmp_path):
        store = MemoryStore(tmp_path, OPTIONS)
        await store.append(_entry(1, files_changed=["src/a.ts"]))

        data = json.loads(store.path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert data["entries"][0]["instruction"] == "task 1"
        assert data["entries"][0]["filesChanged"] == ["src/a.ts"]

    @pytest.mark.asyncio
    async def test_compaction_keeps_target_entries(self, tmp_path):
        _seed(tmp_path, 6)
        store = MemoryStore(tmp_path, OPTIONS)

        state = await store.append(_entry(6))

        assert [e.instruction for e in state.entries] == ["task 4", "task 5", "task 6"]
        assert state.compacted.entries == 4
        persisted = load_memory_state(tmp_path)
        assert len(persisted.entries) == 3
        assert persisted.compacted.entries == 4

    @pytest.mark.asyncio
    async def test_no_compaction_within_ceiling(self, tmp_path):
        _seed(tmp_path, 3)
        state = await MemoryStore(tmp_path, OPTIONS).append(_entry(3))
        assert len(state.entries) == 4
        assert state.compacted is None

    @pytest.mark.asyncio
    async def test_size_ceiling_triggers_compaction(self, tmp_path):
        options = MemoryOptions(max_entries=50, max_chars=600, compaction_target_entries=1)
        store = MemoryStore(tmp_path, options)
        for n in range(3):
            await store.append(_entry(n, summary="s" * 200))

        state = store.load()
        assert len(state.entries) == 1
        assert state.serialized_size() <= 600 or len(state.entries) == 1

    @pytest.mark.asyncio
    async def test_size_ceiling_held_across_many_appends(self, tmp_path):
        options = MemoryOptions(max_entries=5, max_chars=2000, compaction_target_entries=3)
        store = MemoryStore(tmp_path, options)
        for n in range(60):
            state = await store.append(_entry(n, files_changed=[f"src/module_{n}.ts"]))
            assert state.serialized_size() <= options.max_chars

        state = store.load()
        assert len(state.entries) <= options.max_entries
        assert state.compacted.summary.startswith(TRIMMED_SUMMARY_MARKER)
        assert "- task 56 | files: src/module_56.ts" in state.compacted.summary

    @pytest.mark.asyncio
    async def test_oversized_model_summary_capped(self, tmp_path):
        _seed(tmp_path, 6)
        options = MemoryOptions(max_entries=5, max_chars=1000, compaction_target_entries=3)
        long_summary = "\n".join(f"- point {i}" for i in range(200))
        provider = FakeProvider([json.dumps({"summary": long_summary})])
        store = MemoryStore(tmp_path, options, make_client(provider))

        state = await store.append(_entry(6))

        assert state.serialized_size() <= 1000
        assert state.compacted.summary.splitlines()[-1] == "- point 199"

    @pytest.mark.asyncio
    async def test_use_model_false_skips_backend(self, tmp_path):
        _seed(tmp_path, 6)
        provider = FakeProvider([])
        store = MemoryStore(tmp_path, OPTIONS, make_client(provider))

        state = await store.append(_entry(6), use_model=False)

        assert provider.calls == []
        assert state.compacted.entries == 4
        assert state.compacted.summary.splitlines()[0] == "- task 0"

    @pytest.mark.asyncio
    async def test_model_summary_used(self, tmp_path):
        _seed(tmp_path, 6)
        provider = FakeProvider(['{"summary": "- did tasks 0-3"}'])
        store = MemoryStore(tmp_path, OPTIONS, make_client(provider))

        state = await store.append(_entry(6))

        assert state.compacted.summary == "- did tasks 0-3"
        assert provider.calls[0]["messages"][-1].content.startswith("Project memory entries:")

    @pytest.mark.asyncio
    async def test_fallback_summary_when_model_fails(self, tmp_path):
        _seed(tmp_path, 6)
        provider = FakeProvider(["garbage"] * 3)
        store = MemoryStore(tmp_path, OPTIONS, make_client(provider))

        state = await store.append(_entry(6))

        assert state.compacted.summary.splitlines() == [f"- task {i}" for i in range(4)]

    @pytest.mark.asyncio
    async def test_compaction_is_cumulative(self, tmp_path):
        store = MemoryStore(tmp_path, OPTIONS)
        for n in range(10):
            await store.append(_entry(n))

        state = store.load()
        assert "- task 0" in state.compacted.summary
        assert "- task 5" in state.compacted.summary

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, tmp_path):
        _seed(tmp_path, 6)
        cancel = asyncio.Event()
        cancel.set()
        store = MemoryStore(tmp_path, OPTIONS, make_client(FakeProvider([])))
        with pytest.raises(RequestCancelledError):
            await store.append(_entry(6), cancel=cancel)


class TestSummaries:
    def test_fallback_lines(self):
        entries = [
            MemoryEntry(instruction="add login", files_changed=["a.ts", "b.ts"], decisions=["use JWT"]),
            MemoryEntry(instruction="fix typo"),
        ]
        assert fallback_summary(entries) == (
            "- add login | files: a.ts, b.ts | decisions: use JWT\n- fix typo"
        )

    def test_fallback_prefixes_previous_summary(self):
        assert fallback_summary([MemoryEntry(instruction="x")], "- earlier") == "- earlier\n- x"

    def test_fallback_with_nothing(self):
        assert fallback_summary([]) == "Compacted memory unavailable."

    def test_cap_summary_keeps_short_text(self):
        assert cap_summary("- a\n- b", 100) == "- a\n- b"

    def test_cap_summary_drops_oldest_lines(self):
        summary = "\n".join(f"- line {i}" for i in range(10))
        capped = cap_summary(summary, 60)
        lines = capped.splitlines()
        assert lines[0] == TRIMMED_SUMMARY_MARKER
        assert lines[-1] == "- line 9"
        assert "- line 0" not in lines
        assert len(json.dumps(capped)) - 2 <= 60

    def test_cap_summary_replaces_old_marker(self):
        summary = "\n".join([TRIMMED_SUMMARY_MARKER, *(f"- line {i}" for i in range(10))])
        capped = cap_summary(summary, 60)
        assert capped.count(TRIMMED_SUMMARY_MARKER) == 1

    def test_cap_summary_tiny_limit(self):
        assert cap_summary("- one very long line of memory", 30) == TRIMMED_SUMMARY_MARKER
        assert cap_summary("- one very long line of memory", 5) == ""


class TestBuildMemoryContext:
    def test_newest_first_with_compacted_block(self):
        state = MemoryState(entries=[
            _entry(1, intent="set up"),
            _entry(2, decisions=["keep it small"]),
        ])
        state.compacted = None
        context = build_memory_context(state, OPTIONS)
        lines = context.splitlines()
        assert lines[0].endswith("task 2")
        assert "Decisions: keep it small" in lines
        assert "Intent: set up" in lines

    def test_truncated_to_max_chars(self):
        state = MemoryState(entries=[_entry(1, summary="x" * 500)])
        context = build_memory_context(state, MemoryOptions(max_chars=100))
        assert context.endswith("... (truncated memory)")

    def test_empty_state(self):
        assert build_memory_context(MemoryState(), OPTIONS) is None
