"""Heuristics that turn agent text into enums.

All substring/regex heuristics used by supervision live here so they can
be tested in isolation. Callers get enums back, never raw strings.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterable

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z~]|\x1b\][^\x07]*\x07|\x1b[()][0-9A-Za-z]")


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences (CSI, OSC, charset selection) from text."""
    return _ANSI_RE.sub("", text)


# ---------------------------------------------------------------------------
# Confusion
# ---------------------------------------------------------------------------


class ConfusionCategory(enum.Enum):
    MISSING_REQUIREMENTS = "missing_requirements"
    MISSING_FILES = "missing_files"
    NEEDS_CLARIFICATION = "needs_clarification"
    GENERIC = "generic"

    @property
    def recommended_action(self) -> str:
        return _CONFUSION_ACTIONS[self]

    @property
    def intervention_type(self) -> str:
        """Intervention strategy that addresses this category."""
        return _CONFUSION_INTERVENTIONS[self]


_CONFUSION_ACTIONS = {
    ConfusionCategory.MISSING_REQUIREMENTS: "inject_context",
    ConfusionCategory.MISSING_FILES: "create_files",
    ConfusionCategory.NEEDS_CLARIFICATION: "provide_clarification",
    ConfusionCategory.GENERIC: "general_assistance",
}

_CONFUSION_INTERVENTIONS = {
    ConfusionCategory.MISSING_REQUIREMENTS: "requirements_missing",
    ConfusionCategory.MISSING_FILES: "file_not_found",
    ConfusionCategory.NEEDS_CLARIFICATION: "clarification_needed",
    ConfusionCategory.GENERIC: "general_confusion",
}


def classify_confusion(signal: str) -> ConfusionCategory:
    """Classify a free-text confusion signal.

    Checked in order: requirements/instruction-file mentions, missing
    files, requests for clarification. Anything else is GENERIC.
    """
    text = signal.lower()
    if "requirements" in text or "claude.md" in text:
        return ConfusionCategory.MISSING_REQUIREMENTS
    if "file not found" in text or "cannot find" in text:
        return ConfusionCategory.MISSING_FILES
    if "unclear" in text or "clarify" in text:
        return ConfusionCategory.NEEDS_CLARIFICATION
    return ConfusionCategory.GENERIC


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class FailureSeverity(enum.Enum):
    CRITICAL = "critical"  # Failed step is on the workflow's critical list
    RECOVERABLE = "recoverable"  # Error text matches a known fixable pattern
    MINOR = "minor"  # Recorded, not escalated

    @property
    def needs_intervention(self) -> bool:
        return self is not FailureSeverity.MINOR


RECOVERABLE_ERRORS = (
    "file not found",
    "claude.md",
    "requirements",
    "permission denied",
    "connection",
    "timeout",
)


def assess_failure(
    step: str, error: str, critical_steps: Iterable[str] = ()
) -> FailureSeverity:
    if step in set(critical_steps):
        return FailureSeverity.CRITICAL
    text = error.lower()
    if any(pattern in text for pattern in RECOVERABLE_ERRORS):
        return FailureSeverity.RECOVERABLE
    return FailureSeverity.MINOR


@dataclass(frozen=True)
class Recommendation:
    """What supervision should do about an escalated failure."""

    type: str
    action: str
    priority: str
    automated: bool
    intervention_type: str


def recommend_for_failure(step: str, error: str) -> Recommendation:
    text = error.lower()
    if step == "claude_md_created" or "claude.md" in text:
        return Recommendation(
            "inject_requirements",
            "Create the instruction file from the requirements document",
            "high",
            True,
            "claude_md_missing",
        )
    if step == "requirements_found" or "requirements" in text:
        return Recommendation(
            "provide_context",
            "Supply missing requirements context to the agent",
            "high",
            True,
            "requirements_missing",
        )
    if "permission" in text or "access" in text:
        return Recommendation(
            "fix_permissions",
            "Resolve file access permissions",
            "medium",
            False,
            "error_recovery",
        )
    return Recommendation(
        "generic_help",
        "Provide general assistance",
        "low",
        False,
        "error_recovery",
    )


# ---------------------------------------------------------------------------
# Output signals
# ---------------------------------------------------------------------------


class SignalKind(enum.Enum):
    CONFUSION = "confusion"
    ERROR = "error"
    QUESTION = "question"  # Agent is asking permission to proceed


@dataclass(frozen=True)
class OutputSignal:
    """One heuristic hit on a line of agent output."""

    kind: SignalKind
    label: str
    priority: str
    line: str
    intervention_type: str


# (pattern, label, priority, intervention type)
_CONFUSION_PATTERNS = [
    (r"i'm not sure", "uncertainty", "medium", "clarification_needed"),
    (r"could you (clarify|help)", "needs_clarification", "high", "clarification_needed"),
    (r"i don't understand", "general_confusion", "medium", "general_confusion"),
    (r"what (should|do) i", "direction_needed", "high", "clarification_needed"),
    (r"cannot find.*requirements", "missing_requirements", "high", "requirements_missing"),
    (r"no.*claude\.md", "missing_claude_md", "high", "claude_md_missing"),
    (r"unclear.*context", "context_confusion", "high", "general_confusion"),
    (r"not confident.*approach", "approach_uncertainty", "medium", "clarification_needed"),
    (r"missing.*information", "incomplete_context", "high", "requirements_missing"),
]

_ERROR_PATTERNS = [
    (r"permission denied", "permission_error", "high", "error_recovery"),
    (r"command not found", "command_error", "medium", "error_recovery"),
    (r"no such file or directory|file not found", "path_error", "high", "path_error"),
    (r"api.*key.*invalid", "api_key_error", "high", "error_recovery"),
    (r"authentication.*failed", "auth_error", "high", "error_recovery"),
    (r"rate.*limit.*exceeded", "rate_limit_error", "medium", "error_recovery"),
    (r"error:", "error", "high", "error_recovery"),
    (r"failed to", "failure", "medium", "error_recovery"),
]

_QUESTION_PATTERNS = [
    (r"shall i proceed", "proceed", "immediate", "permission_request"),
    (r"should i continue", "proceed", "immediate", "permission_request"),
    (r"would you like me to", "proceed", "immediate", "permission_request"),
    (r"may i (create|implement|add|modify|update)", "modify", "immediate", "permission_request"),
    (r"can i (create|modify|update)", "modify", "immediate", "permission_request"),
    (r"do you want to (proceed|make this edit|create)", "proceed", "immediate", "permission_request"),
]


def _compile(
    kind: SignalKind, table: list[tuple[str, str, str, str]]
) -> list[tuple[re.Pattern[str], SignalKind, str, str, str]]:
    return [
        (re.compile(pattern, re.IGNORECASE), kind, label, priority, itype)
        for pattern, label, priority, itype in table
    ]


# Questions first: "would you like me to ..." must not read as confusion
_ALL_PATTERNS = (
    _compile(SignalKind.QUESTION, _QUESTION_PATTERNS)
    + _compile(SignalKind.CONFUSION, _CONFUSION_PATTERNS)
    + _compile(SignalKind.ERROR, _ERROR_PATTERNS)
)


def detect_signals(text: str) -> list[OutputSignal]:
    """Scan output for confusion, error and permission-question signals.

    ANSI codes are stripped and the text is split into lines; each line
    yields at most one signal (the first matching pattern).
    """
    signals: list[OutputSignal] = []
    for raw_line in strip_ansi(text).replace("\r", "\n").split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        for compiled, kind, label, priority, itype in _ALL_PATTERNS:
            if compiled.search(line):
                signals.append(OutputSignal(kind, label, priority, line, itype))
                break
    return signals


def extract_quoted_files(text: str) -> list[str]:
    """File names mentioned in quotes, e.g. ``create 'src/app.py'``."""
    found = re.findall(r"[\"'`]([^\"'`\s]+\.[A-Za-z0-9]{1,8})[\"'`]", text)
    return list(dict.fromkeys(found))
