"""A pseudo-terminal backed interactive subprocess."""

from __future__ import annotations

import asyncio
import codecs
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class ProcessState(enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"  # kill() in progress
    KILLED = "killed"
    EXITED = "exited"  # the shell ended by itself


def set_winsize(fd: int, rows: int, cols: int) -> None:
    """Apply a terminal window size to a PTY file descriptor."""
    packed = struct.pack("HHHH", max(1, int(rows)), max(1, int(cols)), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, packed)


@dataclass
class PTYProcess:
    """One shell running on the slave side of its own PTY.

    The child leads a new session, so ``kill()`` can signal the whole
    process group (the shell and whatever it started). Reads happen in
    the default executor and are decoded incrementally, which keeps
    multi-byte UTF-8 sequences intact across read boundaries.

    ``on_output`` receives each decoded chunk on the event loop.
    ``on_exit`` fires only when the process ends by itself; ``kill()``
    never triggers it.
    """

    command: list[str]
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 80
    rows: int = 24
    term: str = "xterm-256color"

    on_output: Callable[[str], None] | None = None
    on_exit: Callable[[int | None], None] | None = None

    _fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _reader: asyncio.Task | None = field(default=None, init=False)
    _state: ProcessState = field(default=ProcessState.CREATED, init=False)
    _exit_code: int | None = field(default=None, init=False)

    async def start(self) -> None:
        """Spawn the command on a fresh PTY.

        Raises:
            OSError: If the command cannot be executed (missing binary,
                bad permissions, bad cwd).
        """
        master, slave = pty.openpty()
        try:
            set_winsize(slave, self.rows, self.cols)
        except OSError as e:
            logger.debug("Initial winsize not applied: %s", e)

        child_env = dict(os.environ)
        child_env.update(self.env)
        child_env["TERM"] = self.term

        # Popen rather than pty.fork: forking a process that runs an event loop is unsafe
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=self.cwd,
                env=child_env,
                start_new_session=True,
            )
        except OSError:
            os.close(master)
            raise
        finally:
            os.close(slave)

        self._fd = master
        self._pgid = os.getpgid(self._proc.pid)
        self._state = ProcessState.RUNNING
        self._reader = asyncio.create_task(self._pump())
        logger.info("Spawned %s (pid=%d, pgid=%d)", self.command[0], self._proc.pid, self._pgid)

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        fd = self._fd
        try:
            while self._state is ProcessState.RUNNING:
                try:
                    chunk = await loop.run_in_executor(None, os.read, fd, READ_SIZE)
                except OSError:
                    # EIO once the slave side has no more writers
                    break
                if not chunk:
                    break
                self._deliver(decoder.decode(chunk))
            self._deliver(decoder.decode(b"", final=True))
        except Exception as e:
            logger.debug("Reader for pid=%s stopped: %s", self.pid, e)
        finally:
            if self._state is ProcessState.RUNNING:
                await self._finish(loop)

    def _deliver(self, text: str) -> None:
        if text and self.on_output is not None:
            self.on_output(text)

    async def _finish(self, loop: asyncio.AbstractEventLoop) -> None:
        self._exit_code = await loop.run_in_executor(None, self._reap)
        self._state = ProcessState.EXITED
        self._close_fd()
        logger.info("pid=%s exited with %s", self.pid, self._exit_code)
        if self.on_exit is None:
            return
        try:
            self.on_exit(self._exit_code)
        except Exception:
            logger.exception("on_exit callback failed for pid=%s", self.pid)

    def _reap(self) -> int | None:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    def write(self, data: str | bytes) -> None:
        """Write input to the PTY master, looping over short writes."""
        if self._state is not ProcessState.RUNNING:
            raise RuntimeError(f"pid={self.pid} is not running")
        remaining = memoryview(data.encode("utf-8") if isinstance(data, str) else data)
        while remaining:
            remaining = remaining[os.write(self._fd, remaining):]

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        if self._state is ProcessState.RUNNING:
            set_winsize(self._fd, rows, cols)

    def kill(self) -> None:
        """SIGKILL the process group and reap the shell. Safe to call twice."""
        if self._state not in (ProcessState.RUNNING, ProcessState.STOPPING):
            return
        self._state = ProcessState.STOPPING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("pgid=%d had already exited", self._pgid)
        except OSError as e:
            logger.warning("Could not signal pgid=%d: %s", self._pgid, e)

        if self._proc is not None:
            try:
                self._exit_code = self._proc.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.warning("pid=%s survived SIGKILL", self.pid)

        self._close_fd()
        self._state = ProcessState.KILLED
        logger.info("Killed pgid=%d", self._pgid)

    def _close_fd(self) -> None:
        fd, self._fd = self._fd, -1
        if fd < 0:
            return
        try:
            os.close(fd)
        except OSError as e:
            logger.debug("Closing PTY fd %d: %s", fd, e)

    @property
    def pid(self) -> int | None:
        return None if self._proc is None else self._proc.pid

    @property
    def running(self) -> bool:
        return self._state is ProcessState.RUNNING

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def exit_code(self) -> int | None:
        return self._exit_code
