"""Tests for termwarden.supervision.context.ProjectContextCache."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from termwarden.supervision.context import (
    NO_REQUIREMENTS_GUIDANCE,
    SCENARIOS,
    FileNode,
    ProjectContextCache,
    render_tree,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("")
    (tmp_path / ".git").mkdir()
    (tmp_path / "README.md").write_text("# demo\n")
    return tmp_path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_cache(root: Path, clock: FakeClock, **kwargs) -> ProjectContextCache:
    return ProjectContextCache(root, clock=clock, **kwargs)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    async def test_scans_structure(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        snapshot = await cache.refresh()
        names = [node.name for node in snapshot.file_tree]
        assert names == ["README.md", "src"]
        assert snapshot.file_count == 2
        assert snapshot.existing_code == ("src/app.py",)
        assert "README.md" in snapshot.key_files
        assert snapshot.version == 1

    async def test_refresh_then_read_is_fresh(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        await cache.refresh()
        (project / "PRD.md").write_text("1. Users can register with an email address\n")
        snapshot = await cache.refresh()
        assert snapshot.requirements == ("Users can register with an email address",)
        assert cache.snapshot is snapshot

    async def test_previous_snapshot_untouched(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        first = await cache.refresh()
        (project / "PRD.md").write_text("1. Users can register with an email address\n")
        await cache.refresh()
        assert first.requirements == ()
        assert first.version == 1

    async def test_instruction_file_requirements_merged(
        self, project: Path, clock: FakeClock
    ) -> None:
        (project / "PRD.md").write_text("1. Export reports as PDF documents\n")
        (project / "CLAUDE.md").write_text("- Keep every module under test coverage\n")
        snapshot = await make_cache(project, clock).refresh()
        assert snapshot.requirements == (
            "Export reports as PDF documents",
            "Keep every module under test coverage",
        )
        assert snapshot.instruction_content is not None

    async def test_manifest_dependencies(self, project: Path, clock: FakeClock) -> None:
        (project / "package.json").write_text(
            json.dumps({"main": "index.js", "dependencies": {"react": "18"}})
        )
        snapshot = await make_cache(project, clock).refresh()
        assert snapshot.dependencies == ("react",)
        assert snapshot.project_type == "react-app"
        assert snapshot.framework == "React"
        assert snapshot.entry_points == ("index.js",)

    async def test_bad_manifest_keeps_previous(self, project: Path, clock: FakeClock) -> None:
        (project / "package.json").write_text(json.dumps({"dependencies": {"vue": "3"}}))
        cache = make_cache(project, clock)
        await cache.refresh()
        (project / "package.json").write_text("{not json")
        snapshot = await cache.refresh()
        assert snapshot.dependencies == ("vue",)
        assert cache.stats()["sourceErrors"] == 1

    async def test_malformed_manifest_values_keep_previous(
        self, project: Path, clock: FakeClock
    ) -> None:
        (project / "pyproject.toml").write_text('[project]\ndependencies = ["flask"]\n')
        cache = make_cache(project, clock)
        await cache.refresh()
        (project / "pyproject.toml").write_text("[project]\ndependencies = [5]\n")
        snapshot = await cache.refresh()
        assert snapshot.dependencies == ("flask",)
        assert cache.stats()["sourceErrors"] == 1

    async def test_todo_files(self, project: Path, clock: FakeClock) -> None:
        (project / "TODO.md").write_text("- [x] Scaffold project\n- [ ] Write the API layer\n")
        snapshot = await make_cache(project, clock).refresh()
        assert snapshot.pending_tasks == ("Write the API layer",)
        assert snapshot.completed_tasks == ("Scaffold project",)

    async def test_tree_depth_bound(self, tmp_path: Path, clock: FakeClock) -> None:
        deep = tmp_path / "a" / "b" / "c"
        deep.mkdir(parents=True)
        (deep / "leaf.txt").write_text("x")
        snapshot = await make_cache(tmp_path, clock, tree_depth=1).refresh()
        a = snapshot.file_tree[0]
        assert a.name == "a"
        b = a.children[0]
        assert b.name == "b"
        assert b.children == ()


class TestStaleness:
    async def test_stale_before_first_refresh(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock, ttl=10)
        assert cache.is_stale()
        await cache.refresh()
        assert not cache.is_stale()
        clock.now += 11
        assert cache.is_stale()

    async def test_get_context_refreshes_when_stale(
        self, project: Path, clock: FakeClock
    ) -> None:
        cache = make_cache(project, clock, ttl=10)
        await cache.get_context_for("file_confusion")
        assert cache.snapshot.version == 1
        await cache.get_context_for("file_confusion")
        assert cache.snapshot.version == 1
        clock.now += 11
        await cache.get_context_for("file_confusion")
        assert cache.snapshot.version == 2


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


class TestGetContextFor:
    async def test_requirements_missing_without_requirements(
        self, project: Path, clock: FakeClock
    ) -> None:
        cache = make_cache(project, clock)
        payload = await cache.get_context_for("requirements_missing")
        assert not payload.has_requirements
        guidance = NO_REQUIREMENTS_GUIDANCE.format(instruction_file="CLAUDE.md")
        assert guidance in payload.message
        assert payload.message.startswith("## Context Update: requirements_missing")

    async def test_requirements_missing_detailed(self, project: Path, clock: FakeClock) -> None:
        (project / "PRD.md").write_text(
            "1. Users can upload profile pictures\nAs a user\nI want avatars\n"
        )
        payload = await make_cache(project, clock).get_context_for("requirements_missing")
        assert payload.format == "detailed"
        assert payload.has_requirements
        assert "1. Users can upload profile pictures" in payload.message
        assert "### User Stories:" in payload.message

    async def test_requirements_missing_uses_instruction_file(
        self, project: Path, clock: FakeClock
    ) -> None:
        (project / "CLAUDE.md").write_text("Build a todo app with a calendar view.\n")
        payload = await make_cache(project, clock).get_context_for("requirements_missing")
        assert not payload.has_requirements
        assert "### Instructions (CLAUDE.md):" in payload.message
        assert "calendar view" in payload.message
        assert "No written requirements were found" not in payload.message

    async def test_file_confusion_tree(self, project: Path, clock: FakeClock) -> None:
        payload = await make_cache(project, clock).get_context_for("file_confusion")
        assert payload.format == "tree"
        assert payload.formatted["structure"] == ["README.md", "src/", "  app.py"]
        assert "src/" in payload.message

    async def test_only_scenario_fields_selected(self, project: Path, clock: FakeClock) -> None:
        (project / "PRD.md").write_text("1. Users can upload profile pictures\n")
        payload = await make_cache(project, clock).get_context_for("file_confusion")
        assert "requirements" not in payload.fields
        assert set(payload.fields) <= set(SCENARIOS["file_confusion"].priority)

    async def test_implementation_stuck_progressive(
        self, project: Path, clock: FakeClock
    ) -> None:
        (project / "TODO.md").write_text("- [ ] Wire up the login form\n")
        cache = make_cache(project, clock)
        cache.set_phase("implementation")
        payload = await cache.get_context_for("implementation_stuck")
        assert payload.format == "progressive"
        assert payload.formatted["nextTask"] == "Wire up the login form"
        assert "Continue with: Wire up the login form" in payload.message

    async def test_unknown_scenario_falls_back(self, project: Path, clock: FakeClock) -> None:
        payload = await make_cache(project, clock).get_context_for("something_else")
        assert payload.scenario == "something_else"
        assert payload.format == "comprehensive"

    async def test_extra_passed_through(self, project: Path, clock: FakeClock) -> None:
        payload = await make_cache(project, clock).get_context_for(
            "general_confusion", {"step": "a"}
        )
        assert payload.extra == {"step": "a"}

    async def test_injection_counted(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        await cache.get_context_for("initial_setup")
        await cache.get_context_for("initial_setup")
        assert cache.stats()["contextInjections"] == 2


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


class TestWriters:
    async def test_write_instruction_file(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        assert not cache.has_instruction_file()
        path = await cache.write_instruction_file("# Project Requirements\n")
        assert path == project / "CLAUDE.md"
        assert path.read_text() == "# Project Requirements\n"
        assert cache.has_instruction_file()
        assert cache.snapshot.instruction_content == "# Project Requirements\n"

    async def test_seeded_requirements_document(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        snapshot = await cache.set_requirements_document(
            "1. Support dark mode in every view\n"
        )
        assert snapshot.requirements == ("Support dark mode in every view",)

    async def test_phase_set_during_refresh_survives(
        self, project: Path, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        cache = make_cache(project, clock)
        cache.set_phase("prd_generated")
        read_manifests = cache._read_manifests

        async def read_and_advance(previous):
            cache.set_phase("implementation_started")
            return await read_manifests(previous)

        monkeypatch.setattr(cache, "_read_manifests", read_and_advance)
        snapshot = await cache.refresh()
        assert snapshot.current_phase == "implementation_started"
        assert cache.summary()["phase"] == "implementation_started"

    async def test_summary(self, project: Path, clock: FakeClock) -> None:
        cache = make_cache(project, clock)
        await cache.refresh()
        summary = cache.summary()
        assert summary["files"] == 2
        assert summary["instructionFile"] is False
        assert summary["stale"] is False


class TestRenderTree:
    def test_nested(self) -> None:
        tree = (
            FileNode("src", True, children=(FileNode("main.py", False),)),
            FileNode("setup.cfg", False),
        )
        assert render_tree(tree) == ["src/", "  main.py", "setup.cfg"]
