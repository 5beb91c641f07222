"""Input line tracking for terminal sessions."""

from __future__ import annotations

LINE_TERMINATORS = ("\r", "\n")
DELETE_CHARS = ("\x7f", "\b")

_ESC = "\x1b"


class InputLineBuffer:
    """Mirror of the line the user is currently typing.

    Printable characters append, DEL/BS trims one character (a no-op
    when empty), and a line terminator completes the line. Other control
    characters are ignored here (they still reach the subprocess), as are
    CSI/SS3 escape sequences such as arrow keys.

    ``forwarded`` is the length of the line as the subprocess has seen
    it, updated by the owner through ``mark_forwarded()`` whenever it
    flushes input. It tells the owner how many characters to erase when
    it decides to swallow a line.
    """

    def __init__(self) -> None:
        self._chars: list[str] = []
        self._forwarded = 0
        # 0: normal, 1: after ESC, 2: inside CSI/SS3 sequence
        self._escape = 0

    def feed(self, ch: str) -> str | None:
        """Update the buffer with one character.

        Returns the completed line when ``ch`` is a terminator, else None.
        """
        if self._escape == 1:
            self._escape = 2 if ch in ("[", "O") else 0
            return None
        if self._escape == 2:
            if "@" <= ch <= "~" and ch != "[":
                self._escape = 0
            return None

        if ch in LINE_TERMINATORS:
            line = "".join(self._chars)
            self.clear()
            return line
        if ch in DELETE_CHARS:
            if self._chars:
                self._chars.pop()
            return None
        if ch == _ESC:
            self._escape = 1
            return None
        if ch.isprintable():
            self._chars.append(ch)
        return None

    def mark_forwarded(self) -> None:
        """Record that everything typed so far has reached the subprocess."""
        self._forwarded = len(self._chars)

    @property
    def forwarded(self) -> int:
        return self._forwarded

    @property
    def text(self) -> str:
        return "".join(self._chars)

    def clear(self) -> None:
        self._chars.clear()
        self._forwarded = 0
        self._escape = 0

    def __len__(self) -> int:
        return len(self._chars)
