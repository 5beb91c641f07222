"""Cached snapshot of the project a supervised agent is working in.

The cache scans the project root (a depth-bounded file tree), the
sidecar instruction file, requirement documents and TODO files, and
keeps the result as an immutable ``ProjectSnapshot``. A refresh builds a
complete new snapshot and publishes it with a single reference swap, so
readers see either the old snapshot or the new one, never a mix.

``get_context_for()`` answers scenario-specific questions ("the agent
cannot find its requirements", "the agent is lost in the file tree")
with only the relevant fields, shaped for that scenario and rendered as
a message that can be typed into the agent's terminal.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import aiofiles

from termwarden.supervision.extract import (
    Task,
    extract_acceptance_criteria,
    extract_requirements,
    extract_tasks,
    extract_user_stories,
    infer_framework,
    infer_project_type,
    parse_package_json,
    parse_pyproject,
    parse_requirements_txt,
    refine_from_dependencies,
)

logger = logging.getLogger(__name__)

REQUIREMENT_DOCUMENTS = (
    "PRD.md",
    "prd.md",
    "REQUIREMENTS.md",
    "requirements.md",
    "docs/PRD.md",
    "docs/requirements.md",
)
TODO_FILES = ("TODO.md", "todo.md", "TASKS.md", "tasks.md")
KEY_FILES = (
    "index.js",
    "app.js",
    "main.js",
    "server.js",
    "index.html",
    "package.json",
    "README.md",
    "src/index.js",
    "src/app.js",
    "src/main.js",
    "main.py",
    "app.py",
    "manage.py",
    "pyproject.toml",
    "src/main.py",
)
CONFIG_FILES = (
    "package.json",
    ".env",
    ".env.example",
    "config.js",
    "config.json",
    "webpack.config.js",
    "babel.config.js",
    "tsconfig.json",
    ".eslintrc",
    "pyproject.toml",
    "setup.cfg",
    "requirements.txt",
)
DEFAULT_ENTRY_POINTS = ("index.js", "app.js", "main.js", "server.js", "main.py", "app.py")
CODE_EXTENSIONS = frozenset(
    {".py", ".js", ".jsx", ".ts", ".tsx", ".vue", ".svelte", ".go", ".rs", ".java", ".rb"}
)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileNode:
    name: str
    is_dir: bool
    size: int = 0
    children: tuple[FileNode, ...] = ()


@dataclass(frozen=True)
class TodoFile:
    path: str
    tasks: tuple[Task, ...] = ()


@dataclass(frozen=True)
class ProjectSnapshot:
    """Everything known about the project at one refresh."""

    root: str
    requirements: tuple[str, ...] = ()
    user_stories: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    project_type: str | None = None
    framework: str | None = None
    dependencies: tuple[str, ...] = ()
    file_tree: tuple[FileNode, ...] = ()
    file_count: int = 0
    key_files: tuple[str, ...] = ()
    entry_points: tuple[str, ...] = ()
    config_files: tuple[str, ...] = ()
    existing_code: tuple[str, ...] = ()
    todo_files: tuple[TodoFile, ...] = ()
    instruction_content: str | None = None
    requirements_document: str | None = None
    current_phase: str | None = None
    refreshed_at: float = 0.0
    version: int = 0

    @property
    def pending_tasks(self) -> tuple[str, ...]:
        return tuple(t.text for f in self.todo_files for t in f.tasks if not t.completed)

    @property
    def completed_tasks(self) -> tuple[str, ...]:
        return tuple(t.text for f in self.todo_files for t in f.tasks if t.completed)

    def value_of(self, name: str) -> Any:
        return getattr(self, name)


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScenarioTemplate:
    priority: tuple[str, ...]
    format: str


SCENARIOS: dict[str, ScenarioTemplate] = {
    "initial_setup": ScenarioTemplate(
        ("requirements", "project_type", "framework", "file_tree"), "structured"
    ),
    "requirements_missing": ScenarioTemplate(
        ("requirements", "user_stories", "acceptance_criteria", "instruction_content"),
        "detailed",
    ),
    "file_confusion": ScenarioTemplate(
        ("file_tree", "key_files", "entry_points", "config_files"), "tree"
    ),
    "implementation_stuck": ScenarioTemplate(
        ("current_phase", "pending_tasks", "completed_tasks", "existing_code"),
        "progressive",
    ),
    "general_confusion": ScenarioTemplate(
        ("requirements", "project_type", "file_tree", "current_phase"), "comprehensive"
    ),
}
FALLBACK_SCENARIO = "general_confusion"

NO_REQUIREMENTS_GUIDANCE = (
    "No written requirements were found for this project yet. "
    "Confirm the goal with the user, write the features you intend to build "
    "into {instruction_file}, then implement them one at a time."
)


@dataclass(frozen=True)
class ContextPayload:
    """Answer to ``get_context_for``: selected fields, their shape, and text."""

    scenario: str
    format: str
    fields: dict[str, Any]
    formatted: dict[str, Any]
    message: str
    snapshot_version: int
    refreshed_at: float
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def has_requirements(self) -> bool:
        return bool(self.fields.get("requirements"))


def render_tree(nodes: tuple[FileNode, ...], indent: int = 0) -> list[str]:
    lines = []
    for node in nodes:
        lines.append("  " * indent + (f"{node.name}/" if node.is_dir else node.name))
        if node.is_dir:
            lines.extend(render_tree(node.children, indent + 1))
    return lines


def _numbered(items: Any) -> list[str]:
    return [f"{i}. {item}" for i, item in enumerate(items, 1)]


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ProjectContextCache:
    """TTL-bounded cache of project facts with atomic snapshot swaps."""

    def __init__(
        self,
        project_root: str | Path = ".",
        instruction_file: str = "CLAUDE.md",
        ttl: float = 300.0,
        tree_depth: int = 3,
        skip_dirs: list[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(project_root).expanduser().resolve()
        self.instruction_file = instruction_file
        self.ttl = ttl
        self.tree_depth = tree_depth
        self.skip_dirs = frozenset(skip_dirs if skip_dirs is not None else ["node_modules"])
        self._clock = clock
        self._snapshot = ProjectSnapshot(root=str(self.root))
        self._refresh_lock = asyncio.Lock()
        self._seeded_document: str | None = None
        self._stats = {
            "contextInjections": 0,
            "refreshes": 0,
            "filesScanned": 0,
            "requirementsProvided": 0,
            "sourceErrors": 0,
        }

    @property
    def snapshot(self) -> ProjectSnapshot:
        return self._snapshot

    @property
    def instruction_path(self) -> Path:
        return self.root / self.instruction_file

    def has_instruction_file(self) -> bool:
        return self.instruction_path.is_file()

    def is_stale(self) -> bool:
        refreshed = self._snapshot.refreshed_at
        return refreshed == 0.0 or self._clock() - refreshed > self.ttl

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> ProjectSnapshot:
        """Rebuild the snapshot from disk and swap it in.

        Concurrent calls are serialized. A source that cannot be read
        keeps its value from the previous snapshot.
        """
        async with self._refresh_lock:
            previous = self._snapshot

            try:
                structure = await asyncio.to_thread(self._scan_structure)
            except OSError as e:
                logger.warning("Could not scan %s: %s", self.root, e)
                self._stats["sourceErrors"] += 1
                structure = {
                    "file_tree": previous.file_tree,
                    "file_count": previous.file_count,
                    "key_files": previous.key_files,
                    "config_files": previous.config_files,
                    "existing_code": previous.existing_code,
                }

            instruction = await self._read_source(
                self.instruction_file, previous.instruction_content
            )

            documents = [self._seeded_document] if self._seeded_document else []
            for name in REQUIREMENT_DOCUMENTS:
                content = await self._read_source(name, None)
                if content:
                    documents.append(content)
            requirements_document = "\n\n".join(documents) if documents else None

            todo_files = []
            for name in TODO_FILES:
                content = await self._read_source(name, None)
                if content is not None:
                    todo_files.append(TodoFile(name, tuple(extract_tasks(content))))

            dependencies, entry_points = await self._read_manifests(previous)
            if not entry_points:
                entry_points = [
                    name for name in DEFAULT_ENTRY_POINTS if (self.root / name).is_file()
                ][:1]

            doc_text = requirements_document or ""
            requirements = extract_requirements(doc_text)
            if instruction:
                for req in extract_requirements(instruction):
                    if req not in requirements:
                        requirements.append(req)

            project_type = infer_project_type(doc_text) if doc_text else None
            framework = infer_framework(doc_text) if doc_text else None
            project_type, framework = refine_from_dependencies(
                dependencies, project_type, framework
            )

            snapshot = ProjectSnapshot(
                root=str(self.root),
                requirements=tuple(requirements),
                user_stories=tuple(extract_user_stories(doc_text)),
                acceptance_criteria=tuple(extract_acceptance_criteria(doc_text)),
                project_type=project_type,
                framework=framework,
                dependencies=tuple(dependencies),
                entry_points=tuple(entry_points),
                todo_files=tuple(todo_files),
                instruction_content=instruction,
                requirements_document=requirements_document,
                # set_phase() may have run while the sources were read
                current_phase=self._snapshot.current_phase,
                refreshed_at=self._clock(),
                version=previous.version + 1,
                **structure,
            )
            self._snapshot = snapshot

            self._stats["refreshes"] += 1
            self._stats["filesScanned"] = snapshot.file_count
            self._stats["requirementsProvided"] = len(snapshot.requirements)
            logger.info(
                "Context refreshed: %d files, %d requirements, instruction file %s",
                snapshot.file_count,
                len(snapshot.requirements),
                "present" if instruction is not None else "missing",
            )
            return snapshot

    async def _read_source(self, relative: str, previous: str | None) -> str | None:
        """Read a project file. Missing files are None; unreadable ones keep ``previous``."""
        path = self.root / relative
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read %s: %s", path, e)
            self._stats["sourceErrors"] += 1
            return previous

    async def _read_manifests(
        self, previous: ProjectSnapshot
    ) -> tuple[list[str], list[str]]:
        dependencies: list[str] = []
        entry_points: list[str] = []
        parsers = (
            ("package.json", parse_package_json),
            ("pyproject.toml", parse_pyproject),
        )
        for name, parse in parsers:
            content = await self._read_source(name, None)
            if content is None:
                continue
            try:
                deps, entries = parse(content)
            except (ValueError, TypeError, tomllib.TOMLDecodeError, AttributeError) as e:
                logger.warning("Could not parse %s: %s", name, e)
                self._stats["sourceErrors"] += 1
                return list(previous.dependencies), list(previous.entry_points)
            dependencies.extend(deps)
            entry_points.extend(entries)
        content = await self._read_source("requirements.txt", None)
        if content is not None:
            dependencies.extend(parse_requirements_txt(content))
        return list(dict.fromkeys(dependencies)), list(dict.fromkeys(entry_points))

    def _scan_structure(self) -> dict[str, Any]:
        counter = [0]
        code: list[str] = []
        tree = self._build_tree(self.root, 0, counter, code)
        return {
            "file_tree": tree,
            "file_count": counter[0],
            "key_files": tuple(name for name in KEY_FILES if (self.root / name).is_file()),
            "config_files": tuple(
                name for name in CONFIG_FILES if (self.root / name).exists()
            ),
            "existing_code": tuple(code[:50]),
        }

    def _build_tree(
        self, directory: Path, depth: int, counter: list[int], code: list[str]
    ) -> tuple[FileNode, ...]:
        if depth > self.tree_depth:
            return ()
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError:
            if depth == 0:
                raise
            logger.warning("Could not scan directory: %s", directory)
            return ()

        nodes = []
        for entry in entries:
            if entry.name.startswith(".") or entry.name in self.skip_dirs:
                continue
            try:
                if entry.is_dir(follow_symlinks=False):
                    children = self._build_tree(Path(entry.path), depth + 1, counter, code)
                    nodes.append(FileNode(entry.name, True, children=children))
                    continue
                size = entry.stat().st_size
            except OSError as e:
                logger.debug("Skipping %s: %s", entry.path, e)
                continue
            counter[0] += 1
            if os.path.splitext(entry.name)[1] in CODE_EXTENSIONS:
                code.append(os.path.relpath(entry.path, self.root))
            nodes.append(FileNode(entry.name, False, size=size))
        return tuple(nodes)

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------

    async def set_requirements_document(self, content: str) -> ProjectSnapshot:
        """Seed a requirements document (e.g. a generated PRD) and refresh."""
        self._seeded_document = content
        return await self.refresh()

    async def write_instruction_file(self, content: str) -> Path:
        """Write the sidecar instruction file and publish it in the snapshot."""
        path = self.instruction_path
        async with self._refresh_lock:
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(content)
            self._snapshot = dataclasses.replace(self._snapshot, instruction_content=content)
        logger.info("Wrote instruction file %s (%d chars)", path, len(content))
        return path

    def set_phase(self, phase: str | None) -> None:
        self._snapshot = dataclasses.replace(self._snapshot, current_phase=phase)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_context_for(
        self, scenario: str, extra: dict[str, Any] | None = None
    ) -> ContextPayload:
        """Scenario-shaped context; refreshes first if the snapshot is stale.

        Unknown scenarios use the comprehensive general-confusion shape.
        Missing data never raises; it produces guidance text instead.
        """
        if self.is_stale():
            try:
                await self.refresh()
            except Exception:
                logger.exception("Context refresh failed, serving previous snapshot")
        snapshot = self._snapshot

        template = SCENARIOS.get(scenario) or SCENARIOS[FALLBACK_SCENARIO]
        fields = {}
        for name in template.priority:
            value = snapshot.value_of(name)
            if value:
                fields[name] = value

        formatted = _FORMATTERS[template.format](snapshot, fields)
        message = self._render_message(scenario, template.format, formatted, fields)
        self._stats["contextInjections"] += 1
        return ContextPayload(
            scenario=scenario,
            format=template.format,
            fields=fields,
            formatted=formatted,
            message=message,
            snapshot_version=snapshot.version,
            refreshed_at=snapshot.refreshed_at,
            extra=dict(extra or {}),
        )

    def _render_message(
        self, scenario: str, fmt: str, formatted: dict[str, Any], fields: dict[str, Any]
    ) -> str:
        lines = [f"## Context Update: {scenario}", ""]
        guidance = NO_REQUIREMENTS_GUIDANCE.format(instruction_file=self.instruction_file)

        if fmt == "detailed":
            reqs = formatted["requirements"]
            if reqs["main"]:
                lines += ["I'm providing the missing requirements:", "", "### Project Requirements:"]
                lines += _numbered(reqs["main"])
                if reqs["userStories"]:
                    lines += ["", "### User Stories:"] + [f"- {s}" for s in reqs["userStories"]]
                if reqs["criteria"]:
                    lines += ["", "### Acceptance Criteria:"] + [f"- {c}" for c in reqs["criteria"]]
                lines += ["", "Please proceed with implementing these requirements."]
            elif not formatted["instructions"]:
                lines.append(guidance)
            if formatted["instructions"]:
                if not reqs["main"]:
                    lines.append("The project instructions describe what to build:")
                lines += [
                    "",
                    f"### Instructions ({self.instruction_file}):",
                    formatted["instructions"].strip(),
                ]
        elif fmt == "tree":
            lines.append("Here's the project structure to help you:")
            if formatted["structure"]:
                lines += ["", "```"] + formatted["structure"] + ["```"]
            else:
                lines += ["", "(the project directory is empty)"]
            for label, key in (
                ("Key files", "keyFiles"),
                ("Entry points", "entryPoints"),
                ("Config files", "configFiles"),
            ):
                if formatted[key]:
                    lines.append(f"{label}: {', '.join(formatted[key])}")
            lines += ["", "Create new files in the appropriate directories based on their purpose."]
        elif fmt == "progressive":
            lines.append(f"Current phase: {formatted['phase'] or 'implementation'}")
            if formatted["pending"]:
                lines += ["", "### Remaining tasks:"] + [f"- [ ] {t}" for t in formatted["pending"]]
                lines += ["", f"Continue with: {formatted['pending'][0]}"]
            else:
                lines += ["", "No open tasks are recorded. Pick the next unimplemented requirement."]
            if formatted["completed"]:
                lines += ["", "### Already done:"] + [f"- [x] {t}" for t in formatted["completed"]]
            if formatted["existingCode"]:
                lines += ["", "Existing code: " + ", ".join(formatted["existingCode"][:15])]
        else:
            overview = formatted["overview"]
            if overview:
                lines.append(
                    "Project: "
                    + ", ".join(f"{k}={v}" for k, v in overview.items())
                )
            if formatted["requirements"]:
                lines += ["", "### Requirements:"] + _numbered(formatted["requirements"])
            else:
                lines += ["", guidance]
            if formatted["structure"]:
                lines += ["", "### Structure:", "```"] + formatted["structure"] + ["```"]
            if formatted.get("nextSteps"):
                lines += ["", "### Next steps:"] + _numbered(formatted["nextSteps"])
            if formatted.get("phase"):
                lines += ["", f"Current phase: {formatted['phase']}"]
        return "\n".join(lines).rstrip() + "\n"

    def summary(self) -> dict[str, Any]:
        s = self._snapshot
        return {
            "root": s.root,
            "version": s.version,
            "refreshedAt": s.refreshed_at,
            "stale": self.is_stale(),
            "projectType": s.project_type,
            "framework": s.framework,
            "requirements": len(s.requirements),
            "userStories": len(s.user_stories),
            "files": s.file_count,
            "keyFiles": list(s.key_files),
            "entryPoints": list(s.entry_points),
            "instructionFile": s.instruction_content is not None,
            "pendingTasks": len(s.pending_tasks),
            "completedTasks": len(s.completed_tasks),
            "phase": s.current_phase,
        }

    def stats(self) -> dict[str, Any]:
        return dict(self._stats)


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


def _overview(fields: dict[str, Any]) -> dict[str, str]:
    overview = {}
    if fields.get("project_type"):
        overview["type"] = fields["project_type"]
    if fields.get("framework"):
        overview["framework"] = fields["framework"]
    return overview


def _tree_lines(fields: dict[str, Any], depth: int | None = None) -> list[str]:
    tree = fields.get("file_tree", ())
    lines = render_tree(tree)
    if depth is not None:
        lines = [line for line in lines if len(line) - len(line.lstrip(" ")) < depth * 2]
    return lines


def _format_structured(snapshot: ProjectSnapshot, fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "overview": _overview(fields),
        "requirements": list(fields.get("requirements", ()))[:10],
        "structure": _tree_lines(fields, depth=2),
        "nextSteps": [
            "Review the requirements",
            "Create the main application file",
            "Implement core functionality",
            "Test as you build",
        ],
    }


def _format_detailed(snapshot: ProjectSnapshot, fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "requirements": {
            "main": list(fields.get("requirements", ())),
            "userStories": list(fields.get("user_stories", ())),
            "criteria": list(fields.get("acceptance_criteria", ())),
        },
        "instructions": fields.get("instruction_content"),
        "implementation": {
            "guidelines": [
                "Follow the requirements exactly",
                "Use clean, modular code",
                "Include error handling",
            ],
            "bestPractices": [
                "Test each feature as you build",
                "Keep functions small and focused",
                "Follow the project structure",
            ],
        },
    }


def _format_tree(snapshot: ProjectSnapshot, fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "structure": _tree_lines(fields),
        "keyFiles": list(fields.get("key_files", ())),
        "entryPoints": list(fields.get("entry_points", ())),
        "configFiles": list(fields.get("config_files", ())),
    }


def _format_progressive(snapshot: ProjectSnapshot, fields: dict[str, Any]) -> dict[str, Any]:
    pending = list(fields.get("pending_tasks", ()))
    return {
        "phase": fields.get("current_phase"),
        "pending": pending,
        "completed": list(fields.get("completed_tasks", ())),
        "existingCode": list(fields.get("existing_code", ())),
        "nextTask": pending[0] if pending else None,
    }


def _format_comprehensive(snapshot: ProjectSnapshot, fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "overview": _overview(fields),
        "requirements": list(fields.get("requirements", ())),
        "structure": _tree_lines(fields, depth=2),
        "phase": fields.get("current_phase"),
    }


_FORMATTERS: dict[str, Callable[[ProjectSnapshot, dict[str, Any]], dict[str, Any]]] = {
    "structured": _format_structured,
    "detailed": _format_detailed,
    "tree": _format_tree,
    "progressive": _format_progressive,
    "comprehensive": _format_comprehensive,
}
