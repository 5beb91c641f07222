"""Tests for termwarden.pty.line.InputLineBuffer."""

from __future__ import annotations

from termwarden.pty.line import InputLineBuffer


def feed_all(buf: InputLineBuffer, data: str) -> list[str]:
    lines = []
    for ch in data:
        line = buf.feed(ch)
        if line is not None:
            lines.append(line)
    return lines


class TestInputLineBuffer:
    def test_printable_appends(self) -> None:
        buf = InputLineBuffer()
        assert feed_all(buf, "ls -la") == []
        assert buf.text == "ls -la"
        assert len(buf) == 6

    def test_carriage_return_completes(self) -> None:
        buf = InputLineBuffer()
        assert feed_all(buf, "echo hi\r") == ["echo hi"]
        assert buf.text == ""

    def test_newline_completes(self) -> None:
        buf = InputLineBuffer()
        assert feed_all(buf, "pwd\n") == ["pwd"]

    def test_empty_line(self) -> None:
        buf = InputLineBuffer()
        assert feed_all(buf, "\r") == [""]

    def test_multiple_lines_in_one_chunk(self) -> None:
        buf = InputLineBuffer()
        assert feed_all(buf, "a\rb\r") == ["a", "b"]

    def test_delete_trims(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "lss\x7f")
        assert buf.text == "ls"
        feed_all(buf, "x\b")
        assert buf.text == "ls"

    def test_delete_on_empty_is_noop(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "\x7f\x7f\b")
        assert buf.text == ""

    def test_control_chars_ignored(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "a\x01\x03b")
        assert buf.text == "ab"

    def test_arrow_keys_skipped(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "ab\x1b[Dc\x1bOA")
        assert buf.text == "abc"

    def test_csi_with_parameters_skipped(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "x\x1b[1;5Cy")
        assert buf.text == "xy"

    def test_forwarded_tracking(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "sv")
        assert buf.forwarded == 0
        buf.mark_forwarded()
        assert buf.forwarded == 2
        feed_all(buf, " status\r")
        assert buf.forwarded == 0

    def test_clear(self) -> None:
        buf = InputLineBuffer()
        feed_all(buf, "abc\x1b")
        buf.mark_forwarded()
        buf.clear()
        assert buf.text == ""
        assert buf.forwarded == 0
        # Escape state was reset: the next char is printable again
        feed_all(buf, "[")
        assert buf.text == "["
