"""Text heuristics for pulling project facts out of documents."""

from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass

_NUMBERED_RE = re.compile(r"^\d+\.\s*")
_BULLET_RE = re.compile(r"^[-•*]\s*")
_TASK_RE = re.compile(r"^\s*(?:[-*]\s*)?\[([ xX])\]\s*(.+)$")
_CRITERIA_RE = re.compile(r"acceptance|criteria|\bgiven\b|\bwhen\b|\bthen\b", re.IGNORECASE)


@dataclass(frozen=True)
class Task:
    text: str
    completed: bool


def extract_requirements(content: str) -> list[str]:
    """Numbered lines, substantial bullets and must/should sentences."""
    requirements: list[str] = []

    def add(item: str) -> None:
        if item not in requirements:
            requirements.append(item)

    for line in content.splitlines():
        if _NUMBERED_RE.match(line):
            req = _NUMBERED_RE.sub("", line, count=1).strip()
            if len(req) > 10:
                add(req)
        elif _BULLET_RE.match(line):
            req = _BULLET_RE.sub("", line, count=1).strip()
            if len(req) > 10 and not req.startswith(("//", "#")):
                add(req)
        elif (" must " in line or " should " in line) and len(line) > 20:
            add(line.strip())
    return requirements


def extract_user_stories(content: str) -> list[str]:
    """'As a ...' lines, joined with 'I want'/'so that' continuations."""
    lines = content.splitlines()
    stories: list[str] = []
    for i, line in enumerate(lines):
        lowered = line.lower()
        if "as a " not in lowered and "user story" not in lowered:
            continue
        story = line.strip()
        for follow in lines[i + 1 : i + 3]:
            if "i want" in follow.lower() or "so that" in follow.lower():
                story += " " + follow.strip()
        stories.append(story)
    return stories


def extract_acceptance_criteria(content: str) -> list[str]:
    return [line.strip() for line in content.splitlines() if _CRITERIA_RE.search(line)]


def extract_tasks(content: str) -> list[Task]:
    """Markdown checklist items; ``[x]`` marks a task complete."""
    tasks = []
    for line in content.splitlines():
        m = _TASK_RE.match(line)
        if m and len(m.group(2).strip()) > 5:
            tasks.append(Task(m.group(2).strip(), m.group(1) in ("x", "X")))
    return tasks


_PROJECT_TYPE_KEYWORDS = [
    ("react-app", ("react", "component")),
    ("api-server", ("api", "rest")),
    ("website", ("website", "landing")),
    ("cli-tool", ("cli", "command")),
    ("library", ("library", "package")),
]

_FRAMEWORK_KEYWORDS = [
    ("react", "React"),
    ("vue", "Vue"),
    ("angular", "Angular"),
    ("express", "Express"),
    ("next.js", "Next.js"),
    ("svelte", "Svelte"),
    ("fastapi", "FastAPI"),
    ("django", "Django"),
    ("flask", "Flask"),
]

# dependency -> (project type, framework)
_DEPENDENCY_HINTS = {
    "react": ("react-app", "React"),
    "next": ("react-app", "Next.js"),
    "vue": ("website", "Vue"),
    "express": ("api-server", "Express"),
    "fastapi": ("api-server", "FastAPI"),
    "flask": ("api-server", "Flask"),
    "django": ("website", "Django"),
    "typer": ("cli-tool", "Typer"),
    "click": ("cli-tool", "Click"),
}


def infer_project_type(content: str) -> str:
    lowered = content.lower()
    for project_type, keywords in _PROJECT_TYPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return project_type
    return "general-app"


def infer_framework(content: str) -> str | None:
    lowered = content.lower()
    for keyword, label in _FRAMEWORK_KEYWORDS:
        if re.search(rf"\b{re.escape(keyword)}\b", lowered):
            return label
    return None


def refine_from_dependencies(
    dependencies: list[str], project_type: str | None, framework: str | None
) -> tuple[str | None, str | None]:
    """Declared dependencies beat document keywords."""
    for dep in dependencies:
        hint = _DEPENDENCY_HINTS.get(dep.lower())
        if hint:
            return hint
    return project_type, framework


_REQ_NAME_RE = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._-]*)")


def parse_package_json(content: str) -> tuple[list[str], list[str]]:
    """Return (dependencies, entry points) from a package.json document."""
    data = json.loads(content)
    deps = list((data.get("dependencies") or {}).keys())
    entries = []
    if isinstance(data.get("main"), str) and data["main"]:
        entries.append(data["main"])
    start = (data.get("scripts") or {}).get("start")
    m = re.search(r"node\s+(\S+)", start) if isinstance(start, str) else None
    if m:
        entries.append(m.group(1))
    return deps, entries


def parse_pyproject(content: str) -> tuple[list[str], list[str]]:
    """Return (dependencies, entry points) from a pyproject.toml document."""
    project = tomllib.loads(content).get("project", {})
    deps = []
    for spec in project.get("dependencies", []):
        m = _REQ_NAME_RE.match(spec)
        if m:
            deps.append(m.group(1))
    entries = [target for target in (project.get("scripts") or {}).values()]
    return deps, entries


def parse_requirements_txt(content: str) -> list[str]:
    deps = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith(("#", "-")):
            continue
        m = _REQ_NAME_RE.match(line)
        if m:
            deps.append(m.group(1))
    return deps
