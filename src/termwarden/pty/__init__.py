"""PTY-backed shells bridged to remote transports.

Every session owns one login shell running in its own process group,
keeps a bounded window of its output for late or returning viewers, and
tracks the input line so enhanced commands can be intercepted.
"""

from termwarden.pty.bridge import CommandInterceptor, CommandResult, TerminalBridge
from termwarden.pty.buffer import OutputHistory
from termwarden.pty.line import InputLineBuffer
from termwarden.pty.manager import SessionInfo, SessionRegistry, SessionState, TerminalSession
from termwarden.pty.session import ProcessState, PTYProcess
from termwarden.pty.transport import Transport, TransportChannel

__all__ = [
    "CommandInterceptor",
    "CommandResult",
    "TerminalBridge",
    "OutputHistory",
    "InputLineBuffer",
    "SessionInfo",
    "SessionRegistry",
    "SessionState",
    "TerminalSession",
    "PTYProcess",
    "ProcessState",
    "Transport",
    "TransportChannel",
]
