"""Session registry — lifecycle authority for terminal sessions."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

from termwarden.errors import SessionNotFound
from termwarden.pty.buffer import OutputHistory
from termwarden.pty.line import InputLineBuffer
from termwarden.pty.session import PTYProcess
from termwarden.pty.transport import TransportChannel

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CREATED = "created"  # Subprocess spawned, nobody attached yet
    ATTACHED = "attached"
    DETACHED = "detached"  # Transport gone, output keeps buffering
    TERMINATED = "terminated"


@dataclass
class TerminalSession:
    """One interactive subprocess plus its buffered I/O state.

    ``history`` and ``line`` are only mutated on the event loop; input
    processing is serialized with ``lock``.
    """

    id: str
    process: PTYProcess
    shell: str
    working_dir: str
    history: OutputHistory
    cols: int = 80
    rows: int = 24
    line: InputLineBuffer = field(default_factory=InputLineBuffer)
    state: SessionState = SessionState.CREATED
    channel: TransportChannel | None = None
    created_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def attached(self) -> bool:
        return self.channel is not None and not self.channel.closed


@dataclass(frozen=True)
class SessionInfo:
    """Read-only view of a session for callers outside the bridge."""

    session_id: str
    process_id: int | None
    shell_name: str
    working_dir: str
    state: SessionState
    cols: int
    rows: int
    buffered_chunks: int
    attached: bool
    created_at: float

    @classmethod
    def of(cls, session: TerminalSession) -> SessionInfo:
        return cls(
            session_id=session.id,
            process_id=session.process.pid,
            shell_name=os.path.basename(session.shell),
            working_dir=session.working_dir,
            state=session.state,
            cols=session.cols,
            rows=session.rows,
            buffered_chunks=len(session.history),
            attached=session.attached,
            created_at=session.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "processId": self.process_id,
            "shellName": self.shell_name,
            "workingDir": self.working_dir,
            "state": self.state.value,
            "cols": self.cols,
            "rows": self.rows,
            "bufferedChunks": self.buffered_chunks,
            "attached": self.attached,
            "createdAt": self.created_at,
        }


class SessionRegistry:
    """In-memory mapping from session id to session.

    Mutated only from the event loop thread, so plain dict operations
    give exclusive insert/remove against concurrent lookups.
    """

    def __init__(self, max_sessions: int = 10) -> None:
        self._sessions: dict[str, TerminalSession] = {}
        self.max_sessions = max_sessions

    def add(self, session: TerminalSession) -> None:
        if session.id in self._sessions:
            raise ValueError(f"Duplicate session id: {session.id}")
        self._sessions[session.id] = session

    def get(self, session_id: str) -> TerminalSession | None:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> TerminalSession:
        """Like ``get`` but raises SessionNotFound for unknown ids."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def remove(self, session_id: str) -> TerminalSession | None:
        return self._sessions.pop(session_id, None)

    def oldest(self) -> TerminalSession | None:
        return next(iter(self._sessions.values()), None)

    @property
    def full(self) -> bool:
        return len(self._sessions) >= self.max_sessions

    def ids(self) -> list[str]:
        return list(self._sessions)

    def __iter__(self) -> Iterator[TerminalSession]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
