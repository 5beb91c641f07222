"""Relays bytes between PTY subprocesses and remote UIs.

One bridge owns every terminal session in the process. Output is
buffered from the moment a shell is spawned, so a UI that attaches late
(or re-attaches after a dropped connection) replays everything still in
the window before receiving live chunks.

Input goes through an ``InputLineBuffer`` so completed lines can be
offered to a command interceptor. Intercepted lines never reach the
shell; their result is written to the session's output instead.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from termwarden.config import BridgeConfig
from termwarden.errors import SessionCreateError
from termwarden.pty.buffer import OutputHistory
from termwarden.pty.manager import (
    SessionInfo,
    SessionRegistry,
    SessionState,
    TerminalSession,
)
from termwarden.pty.session import PTYProcess
from termwarden.pty.transport import Transport, TransportChannel
from termwarden.wire import EventType, Wire

logger = logging.getLogger(__name__)

PASTE_START = "\x1b[200~"
PASTE_END = "\x1b[201~"


@dataclass
class CommandResult:
    """Outcome of an enhanced command.

    ``handled=False`` tells the bridge to forward the original line to
    the shell as if nothing had intercepted it.
    """

    handled: bool
    message: str = ""


class CommandInterceptor(Protocol):
    def matches(self, line: str) -> bool: ...

    async def execute(self, session_id: str, line: str) -> CommandResult: ...


def _crlf(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\n", "\r\n")


class TerminalBridge:
    """Owns PTY-backed sessions and relays their I/O."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        wire: Wire | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self._wire = wire
        self._registry = registry or SessionRegistry(self.config.max_sessions)
        self._interceptor: CommandInterceptor | None = None
        self._tasks: set[asyncio.Task] = set()

    def set_command_interceptor(self, interceptor: CommandInterceptor | None) -> None:
        self._interceptor = interceptor

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        cols: int = 80,
        rows: int = 24,
        working_dir: str | None = None,
    ) -> str:
        """Spawn a login shell in a new PTY and start buffering its output.

        The preferred shell is tried first, then the fallback shell once.

        Raises:
            SessionCreateError: If the working directory does not exist or
                no shell could be spawned.
        """
        cwd = os.path.abspath(os.path.expanduser(working_dir or os.getcwd()))
        if not os.path.isdir(cwd):
            raise SessionCreateError(f"Working directory does not exist: {cwd}")

        if self._registry.full:
            oldest = self._registry.oldest()
            if oldest is not None:
                logger.warning("Max sessions reached, terminating oldest: %s", oldest.id)
                await self.terminate(oldest.id)

        session_id = uuid.uuid4().hex
        commands = [[self.config.shell, *self.config.shell_args]]
        if self.config.fallback_shell and self.config.fallback_shell != self.config.shell:
            commands.append([self.config.fallback_shell])

        failures: list[str] = []
        for command in commands:
            process = PTYProcess(
                command=command,
                cwd=cwd,
                cols=cols,
                rows=rows,
                term=self.config.term,
                on_output=partial(self._on_output, session_id),
                on_exit=partial(self._on_exit, session_id),
            )
            try:
                await process.start()
            except OSError as e:
                logger.warning("Could not spawn %s: %s", command[0], e)
                failures.append(f"{command[0]}: {e}")
                continue

            # Registered before the reader task gets a chance to run
            session = TerminalSession(
                id=session_id,
                process=process,
                shell=command[0],
                working_dir=cwd,
                history=OutputHistory(
                    self.config.history_limit, self.config.history_max_bytes
                ),
                cols=cols,
                rows=rows,
            )
            self._registry.add(session)
            logger.info(
                "Session %s created: shell=%s pid=%s cwd=%s",
                session_id,
                command[0],
                process.pid,
                cwd,
            )
            if self._wire:
                self._wire.send_session(EventType.SESSION_CREATED, session_id)
            return session_id

        raise SessionCreateError(
            "No shell could be spawned (" + "; ".join(failures) + ")",
            attempts=failures,
        )

    async def terminate(self, session_id: str) -> None:
        """Kill the subprocess, close any transport and forget the session.

        Idempotent: unknown or already-terminated ids are ignored.
        """
        session = self._registry.remove(session_id)
        if session is None:
            return
        session.state = SessionState.TERMINATED
        session.process.kill()
        channel, session.channel = session.channel, None
        if channel is not None:
            await channel.close(close_transport=True)
        logger.info("Session %s terminated", session_id)
        if self._wire:
            self._wire.send_session(EventType.SESSION_TERMINATED, session_id)

    def _on_exit(self, session_id: str, exit_code: int | None) -> None:
        self._spawn(self._handle_exit(session_id, exit_code))

    async def _handle_exit(self, session_id: str, exit_code: int | None) -> None:
        session = self._registry.remove(session_id)
        if session is None:
            return
        session.state = SessionState.TERMINATED
        logger.info("Session %s exited on its own (code=%s)", session_id, exit_code)
        channel, session.channel = session.channel, None
        if channel is not None:
            channel.send({"type": "exit", "exitCode": exit_code})
            await channel.close(close_transport=True)
        if self._wire:
            self._wire.send_session(EventType.SESSION_EXIT, session_id, exit_code=exit_code)

    async def shutdown(self) -> None:
        """Terminate every session. Called on process shutdown."""
        for session_id in self._registry.ids():
            await self.terminate(session_id)
        for task in list(self._tasks):
            task.cancel()
        logger.info("All terminal sessions cleaned up")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Transport binding
    # ------------------------------------------------------------------

    def attach(self, session_id: str, transport: Transport) -> None:
        """Bind a transport and replay the buffered history to it.

        A previous binding is replaced without closing its transport.

        Raises:
            SessionNotFound: If the id is unknown.
        """
        session = self._registry.require(session_id)
        if session.channel is not None:
            session.channel.cancel()

        channel = TransportChannel(
            transport,
            maxsize=self.config.transport_queue_size,
            on_failure=partial(self._on_transport_failure, session_id),
        )
        backlog = session.history.read_all()
        if backlog:
            channel.send({"type": "output", "data": backlog})
        session.channel = channel
        session.state = SessionState.ATTACHED
        logger.info("Transport attached to session %s (%d bytes replayed)", session_id, len(backlog))

    def detach(self, session_id: str, transport: Transport | None = None) -> None:
        """Clear the transport binding; output keeps buffering.

        With ``transport`` given, only that binding is cleared, so a stale
        connection cannot detach the one that replaced it.
        """
        session = self._registry.get(session_id)
        if session is None or session.channel is None:
            return
        if transport is not None and session.channel.transport is not transport:
            return
        session.channel.cancel()
        session.channel = None
        if session.state != SessionState.TERMINATED:
            session.state = SessionState.DETACHED
        logger.info("Transport detached from session %s", session_id)

    def _on_transport_failure(self, session_id: str, channel: TransportChannel) -> None:
        session = self._registry.get(session_id)
        if session is not None and session.channel is channel:
            session.channel = None
            session.state = SessionState.DETACHED

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_output(self, session_id: str, text: str) -> None:
        session = self._registry.get(session_id)
        if session is None:
            return
        self._emit_output(session, text)
        if self._wire:
            self._wire.send_session(EventType.SESSION_OUTPUT, session_id, data=text)

    def _emit_output(self, session: TerminalSession, text: str) -> None:
        session.history.append(text)
        if session.channel is not None:
            session.channel.send({"type": "output", "data": text})

    def write_output(self, session_id: str, text: str) -> None:
        """Append text to a session's output stream without involving the shell."""
        self._emit_output(self._registry.require(session_id), text)

    def send_error(self, session_id: str, message: str) -> None:
        """Send an error frame to the attached transport, if any."""
        session = self._registry.require(session_id)
        if session.channel is not None:
            session.channel.send({"type": "error", "message": message})

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def submit_input(self, session_id: str, data: str) -> None:
        """Forward user input to the subprocess, intercepting enhanced commands.

        Characters are forwarded in order and unchanged, except for a
        line the interceptor handles: its characters from this call are
        withheld, the ones forwarded by earlier calls are erased with one
        backspace each, and its terminator is not sent.

        Raises:
            SessionNotFound: If the id is unknown.
        """
        session = self._registry.require(session_id)
        async with session.lock:
            pending: list[str] = []
            for ch in data:
                erase = session.line.forwarded
                line = session.line.feed(ch)
                if line is None:
                    pending.append(ch)
                    continue
                if await self._intercept(session, line, erase):
                    pending.clear()
                    continue
                pending.append(ch)
                self._forward(session, "".join(pending))
                pending.clear()
            if pending:
                self._forward(session, "".join(pending))
                session.line.mark_forwarded()

    async def _intercept(self, session: TerminalSession, line: str, erase: int) -> bool:
        interceptor = self._interceptor
        if interceptor is None or not line.strip():
            return False
        try:
            if not interceptor.matches(line):
                return False
            result = await interceptor.execute(session.id, line)
        except Exception:
            logger.exception("Enhanced command %r failed, forwarding to shell", line)
            return False
        if not result.handled:
            return False

        if erase:
            self._forward(session, "\b" * erase)
        body = _crlf(result.message.rstrip("\n"))
        self._emit_output(session, "\r\n" + body + "\r\n" + self.config.prompt)
        logger.debug("Session %s: intercepted %r", session.id, line)
        return True

    def _forward(self, session: TerminalSession, data: str) -> None:
        try:
            session.process.write(data)
        except (OSError, RuntimeError) as e:
            logger.warning("Session %s: input dropped: %s", session.id, e)

    async def inject(
        self,
        session_id: str,
        text: str,
        submit: bool = True,
        bracketed: bool = False,
    ) -> None:
        """Type supervisor text into the subprocess, bypassing interception.

        With ``bracketed`` the text is wrapped in bracketed-paste markers
        so multi-line content arrives as a single paste. ``submit`` sends
        a carriage return afterwards.
        """
        session = self._registry.require(session_id)
        async with session.lock:
            payload = f"{PASTE_START}{text}{PASTE_END}" if bracketed else text
            self._forward(session, payload)
            if submit:
                self._forward(session, "\r")
                session.line.clear()
        logger.info("Session %s: injected %d chars", session_id, len(text))

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._registry.require(session_id)
        try:
            session.process.resize(cols, rows)
        except OSError as e:
            logger.warning("Session %s: resize failed: %s", session_id, e)
            return
        session.cols, session.rows = cols, rows

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def describe(self, session_id: str) -> SessionInfo:
        return SessionInfo.of(self._registry.require(session_id))

    def list_sessions(self) -> list[SessionInfo]:
        return [SessionInfo.of(s) for s in self._registry]

    def history(self, session_id: str) -> list[str]:
        return self._registry.require(session_id).history.snapshot()

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._registry

    def __len__(self) -> int:
        return len(self._registry)
