"""Deterministic project introspection (no model calls).

Collects the facts the planner and its local fallback need: a shallow
project-relative file listing, the nearest ``package.json``, the package
manager, and the frontend/backend framework when one is obvious.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

MAX_SCAN_DEPTH = 2
SKIPPED_DIRS = frozenset({"node_modules", ".git"})

_LOCKFILES = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
)

_FRONTEND_FRAMEWORKS = (
    ("next", "next"),
    ("react", "react"),
    ("vue", "vue"),
    ("nuxt", "nuxt"),
    ("@angular/core", "angular"),
    ("svelte", "svelte"),
    ("solid-js", "solid"),
    ("astro", "astro"),
)

_BACKEND_FRAMEWORKS = (
    ("@nestjs/core", "nestjs"),
    ("express", "express"),
    ("fastify", "fastify"),
    ("koa", "koa"),
    ("@hapi/hapi", "hapi"),
    ("hono", "hono"),
)

VALIDATION_SCRIPTS = ("test", "lint", "typecheck", "build")


@dataclass
class ProjectContext:
    """Snapshot of the workspace handed to the planner and its prompts."""

    workspace_root: str | None = None
    active_file: str | None = None
    files: list[str] = field(default_factory=list)
    package_json: dict[str, Any] | None = None
    package_manager: str | None = None
    frontend_framework: str | None = None
    backend_framework: str | None = None

    @property
    def scripts(self) -> dict[str, str]:
        scripts = (self.package_json or {}).get("scripts")
        return scripts if isinstance(scripts, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspaceRoot": self.workspace_root,
            "activeEditorFile": self.active_file,
            "files": list(self.files),
            "packageJson": self.package_json,
            "packageManager": self.package_manager,
            "frontendFramework": self.frontend_framework,
            "backendFramework": self.backend_framework,
        }


def script_command(script: str, package_manager: str | None) -> str:
    """Build the shell command that runs a package.json script."""
    pm = package_manager or "npm"
    if pm == "yarn":
        return f"yarn {script}"
    if pm == "pnpm":
        return f"pnpm {script}"
    if pm == "bun":
        return f"bun run {script}"
    if script == "test":
        return "npm test"
    return f"npm run {script}"


def validation_options(context: ProjectContext) -> list[tuple[str, str]]:
    """Return ``(label, command)`` pairs for the validation scripts the project declares."""
    scripts = context.scripts
    return [
        (name, script_command(name, context.package_manager))
        for name in VALIDATION_SCRIPTS
        if scripts.get(name)
    ]


def list_project_files(root: Path, max_depth: int = MAX_SCAN_DEPTH) -> list[str]:
    """List files under ``root`` (relative, ``/``-separated) to a fixed depth."""
    files: list[str] = []
    stack: list[tuple[Path, int]] = [(root, 0)]
    while stack:
        directory, depth = stack.pop()
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            continue
        for entry in entries:
            if entry.name in SKIPPED_DIRS:
                continue
            path = Path(entry.path)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError:
                continue
            if is_dir:
                if depth < max_depth:
                    stack.append((path, depth + 1))
            else:
                files.append(path.relative_to(root).as_posix())
    return sorted(files)


def _find_package_json(root: Path, active_file: Path | None, files: list[str]) -> Path | None:
    root_resolved = root.resolve()
    if active_file is not None and active_file.resolve().is_relative_to(root_resolved):
        directory = active_file.resolve().parent
        while True:
            candidate = directory / "package.json"
            if candidate.is_file():
                return candidate
            if directory == root_resolved or directory.parent == directory:
                break
            directory = directory.parent

    root_manifest = root / "package.json"
    if root_manifest.is_file():
        return root_manifest

    candidates = [f for f in files if f == "package.json" or f.endswith("/package.json")]
    if len(candidates) == 1:
        return root / candidates[0]
    return None


def _load_package_json(path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Ignoring unreadable manifest %s: %s", path, e)
        return None
    return data if isinstance(data, dict) else None


def detect_package_manager(package_json: dict[str, Any], project_dir: Path) -> str | None:
    declared = package_json.get("packageManager")
    if isinstance(declared, str) and declared.strip():
        return declared.split("@")[0] or None
    for lockfile, manager in _LOCKFILES:
        if (project_dir / lockfile).exists():
            return manager
    return None


def _detect_framework(deps: dict[str, Any], table: tuple[tuple[str, str], ...]) -> str | None:
    for package, framework in table:
        if package in deps:
            return framework
    return None


def harvest_context(
    workspace_root: Path | None,
    active_file: Path | None = None,
) -> ProjectContext:
    """Collect a deterministic ProjectContext for ``workspace_root``."""
    if workspace_root is None:
        return ProjectContext(active_file=str(active_file) if active_file else None)

    root = workspace_root.resolve()
    files = list_project_files(root)
    manifest_path = _find_package_json(root, active_file, files)
    package_json = _load_package_json(manifest_path) if manifest_path else None

    package_manager = None
    frontend = None
    backend = None
    if package_json is not None and manifest_path is not None:
        deps: dict[str, Any] = {}
        for key in ("dependencies", "devDependencies"):
            section = package_json.get(key)
            if isinstance(section, dict):
                deps.update(section)
        package_manager = detect_package_manager(package_json, manifest_path.parent)
        frontend = _detect_framework(deps, _FRONTEND_FRAMEWORKS)
        backend = _detect_framework(deps, _BACKEND_FRAMEWORKS)

    return ProjectContext(
        workspace_root=str(root),
        active_file=str(active_file) if active_file else None,
        files=files,
        package_json=package_json,
        package_manager=package_manager,
        frontend_framework=frontend,
        backend_framework=backend,
    )
