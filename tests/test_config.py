"""Tests for termwarden.config.TermwardenConfig."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from termwarden.config import BridgeConfig, SupervisionConfig, TermwardenConfig

ENV_VARS = (
    "TERMWARDEN_SHELL",
    "TERMWARDEN_PROJECT_ROOT",
    "TERMWARDEN_MODE",
    "TERMWARDEN_HISTORY_LIMIT",
    "TERMWARDEN_HOST",
    "TERMWARDEN_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


class TestDefaults:
    def test_defaults(self) -> None:
        config = TermwardenConfig.load()
        assert config.bridge.history_limit == 1000
        assert config.bridge.history_max_bytes is None
        assert config.bridge.fallback_shell == "/bin/sh"
        assert config.supervision.mode == "balanced"
        assert config.supervision.instruction_file == "CLAUDE.md"
        assert config.server.port == 8765

    def test_shell_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHELL", "/usr/bin/fish")
        assert BridgeConfig().shell == "/usr/bin/fish"

    def test_missing_file_ignored(self) -> None:
        config = TermwardenConfig.load("does-not-exist.yaml")
        assert config.supervision.mode == "balanced"


class TestFiles:
    def test_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "termwarden.yaml"
        path.write_text(
            "bridge:\n"
            "  shell: /bin/zsh\n"
            "  history_max_bytes: 65536\n"
            "supervision:\n"
            "  mode: strict\n"
            "  cooldown: 5\n"
        )
        config = TermwardenConfig.load(str(path))
        assert config.bridge.shell == "/bin/zsh"
        assert config.bridge.history_max_bytes == 65536
        assert config.supervision.mode == "strict"
        assert config.supervision.cooldown == 5.0

    def test_json(self, tmp_path: Path) -> None:
        path = tmp_path / "termwarden.json"
        path.write_text(json.dumps({"server": {"host": "0.0.0.0", "port": 9000}}))
        config = TermwardenConfig.load(str(path))
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 9000

    def test_invalid_mode_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "termwarden.yaml"
        path.write_text("supervision:\n  mode: chaotic\n")
        with pytest.raises(ValidationError):
            TermwardenConfig.load(str(path))


class TestEnvOverrides:
    def test_env_wins_over_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "termwarden.yaml"
        path.write_text("supervision:\n  mode: strict\nserver:\n  port: 9000\n")
        monkeypatch.setenv("TERMWARDEN_MODE", "AUTO")
        monkeypatch.setenv("TERMWARDEN_PORT", "9100")
        config = TermwardenConfig.load(str(path))
        assert config.supervision.mode == "auto"
        assert config.server.port == 9100

    def test_bridge_and_root(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TERMWARDEN_SHELL", "/bin/dash")
        monkeypatch.setenv("TERMWARDEN_HISTORY_LIMIT", "50")
        monkeypatch.setenv("TERMWARDEN_PROJECT_ROOT", "/srv/app")
        config = TermwardenConfig.load()
        assert config.bridge.shell == "/bin/dash"
        assert config.bridge.history_limit == 50
        assert config.supervision.project_root == "/srv/app"


class TestValidation:
    def test_history_limit_positive(self) -> None:
        with pytest.raises(ValidationError):
            BridgeConfig(history_limit=0)

    def test_supervision_defaults(self) -> None:
        config = SupervisionConfig()
        assert config.approve_input == "1"
        assert config.reject_input == "3"
        assert "node_modules" in config.skip_dirs
