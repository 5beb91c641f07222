"""Configuration — Pydantic models for termwarden settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


class BridgeConfig(BaseModel):
    """Terminal bridge configuration."""

    shell: str = Field(default_factory=_default_shell)
    shell_args: list[str] = Field(
        default_factory=lambda: ["-l"],
        description="Arguments for the preferred shell (login-style by default)",
    )
    fallback_shell: str = Field(
        default="/bin/sh", description="Minimal shell tried once if the preferred one fails"
    )
    term: str = Field(default="xterm-256color")
    history_limit: int = Field(
        default=1000, ge=1, description="Max buffered output chunks per session"
    )
    history_max_bytes: int | None = Field(
        default=None,
        description="Optional byte cap on buffered output (oldest chunks evicted first)",
    )
    max_sessions: int = Field(default=10, ge=1)
    transport_queue_size: int = Field(
        default=1024, ge=1, description="Outbound messages held per attached transport"
    )
    prompt: str = Field(
        default="$ ", description="Prompt written after an enhanced command's output"
    )


class SupervisionConfig(BaseModel):
    """Supervision engine configuration."""

    project_root: str = Field(default=".")
    instruction_file: str = Field(
        default="CLAUDE.md", description="Sidecar instruction file at the project root"
    )
    context_ttl: float = Field(
        default=300.0, description="Seconds before the project snapshot is refreshed"
    )
    tree_depth: int = Field(default=3, ge=1)
    skip_dirs: list[str] = Field(
        default_factory=lambda: [
            "node_modules",
            "__pycache__",
            "venv",
            "dist",
            "build",
            "target",
        ]
    )
    history_limit: int = Field(default=100, ge=1, description="Intervention records kept")
    mode: Literal["strict", "balanced", "auto"] = Field(
        default="balanced",
        description=(
            "strict never injects automatically, balanced injects high-priority "
            "interventions, auto injects everything"
        ),
    )
    cooldown: float = Field(
        default=30.0,
        description="Seconds between interventions of the same type for one session",
    )
    bracketed_paste: bool = Field(
        default=True, description="Wrap injected text in bracketed-paste markers"
    )
    approve_input: str = Field(default="1", description="Keystroke sent on approval")
    reject_input: str = Field(default="3", description="Keystroke sent on rejection")
    workflows_file: str | None = Field(
        default=None, description="YAML file with additional workflow definitions"
    )


class ServerConfig(BaseModel):
    """HTTP/WebSocket server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765)


class TermwardenConfig(BaseModel):
    """Top-level termwarden configuration."""

    bridge: BridgeConfig = Field(default_factory=BridgeConfig)
    supervision: SupervisionConfig = Field(default_factory=SupervisionConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> TermwardenConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults. Files ending in
        ``.yaml``/``.yml`` are parsed as YAML, anything else as JSON.

        Env vars:
            TERMWARDEN_SHELL          - Preferred shell executable
            TERMWARDEN_PROJECT_ROOT   - Project directory scanned for context
            TERMWARDEN_MODE           - Supervision mode (strict/balanced/auto)
            TERMWARDEN_HISTORY_LIMIT  - Buffered output chunks per session
            TERMWARDEN_HOST           - Server bind host
            TERMWARDEN_PORT           - Server bind port
        """
        # .env values win over stale shell exports
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                if Path(config_path).suffix in (".yaml", ".yml"):
                    config_data = yaml.safe_load(f) or {}
                else:
                    config_data = json.load(f)

        bridge = config_data.get("bridge", {})
        supervision = config_data.get("supervision", {})
        server = config_data.get("server", {})

        env_shell = os.environ.get("TERMWARDEN_SHELL")
        if env_shell:
            bridge["shell"] = env_shell

        env_history = os.environ.get("TERMWARDEN_HISTORY_LIMIT")
        if env_history:
            bridge["history_limit"] = int(env_history)

        env_root = os.environ.get("TERMWARDEN_PROJECT_ROOT")
        if env_root:
            supervision["project_root"] = env_root

        env_mode = os.environ.get("TERMWARDEN_MODE")
        if env_mode:
            supervision["mode"] = env_mode.lower()

        env_host = os.environ.get("TERMWARDEN_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("TERMWARDEN_PORT")
        if env_port:
            server["port"] = int(env_port)

        if bridge:
            config_data["bridge"] = bridge
        if supervision:
            config_data["supervision"] = supervision
        if server:
            config_data["server"] = server

        return cls.model_validate(config_data)
