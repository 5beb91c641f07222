"""Tests for termwarden.pty.buffer.OutputHistory."""

from __future__ import annotations

import pytest

from termwarden.pty.buffer import OutputHistory


class TestOutputHistoryBasics:
    def test_empty(self) -> None:
        history = OutputHistory()
        assert len(history) == 0
        assert history.total_chunks == 0
        assert history.read_all() == ""
        assert history.snapshot() == []

    def test_append(self) -> None:
        history = OutputHistory()
        history.append("hello")
        history.append("world")
        assert len(history) == 2
        assert history.total_chunks == 2

    def test_read_all_joins_verbatim(self) -> None:
        history = OutputHistory()
        history.append("\x1b[32mgreen\x1b[0m")
        history.append("\r\n$ ")
        assert history.read_all() == "\x1b[32mgreen\x1b[0m\r\n$ "

    def test_empty_chunk_ignored(self) -> None:
        history = OutputHistory()
        history.append("")
        assert len(history) == 0
        assert history.total_chunks == 0

    def test_read_tail(self) -> None:
        history = OutputHistory()
        for i in range(10):
            history.append(f"c{i}")
        assert history.read_tail(3) == ["c7", "c8", "c9"]

    def test_read_tail_more_than_available(self) -> None:
        history = OutputHistory()
        history.append("a")
        history.append("b")
        assert history.read_tail(10) == ["a", "b"]

    def test_snapshot_is_a_copy(self) -> None:
        history = OutputHistory()
        history.append("a")
        snap = history.snapshot()
        snap.append("b")
        assert history.snapshot() == ["a"]

    def test_clear(self) -> None:
        history = OutputHistory()
        history.append("a")
        history.clear()
        assert len(history) == 0
        assert history.byte_size == 0
        assert history.read_all() == ""
        # total_chunks is not reset by clear
        assert history.total_chunks == 1

    def test_invalid_cap(self) -> None:
        with pytest.raises(ValueError):
            OutputHistory(max_chunks=0)


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


class TestOutputHistoryEviction:
    def test_chunk_cap_evicts_oldest(self) -> None:
        history = OutputHistory(max_chunks=3)
        for ch in "abcde":
            history.append(ch)
        assert history.snapshot() == ["c", "d", "e"]
        assert history.total_chunks == 5

    def test_1001_chunks_with_cap_1000(self) -> None:
        history = OutputHistory(max_chunks=1000)
        for i in range(1, 1002):
            history.append(f"chunk{i}")
        chunks = history.snapshot()
        assert len(chunks) == 1000
        assert chunks[0] == "chunk2"
        assert chunks[-1] == "chunk1001"

    def test_never_exceeds_cap(self) -> None:
        history = OutputHistory(max_chunks=5)
        for i in range(50):
            history.append(str(i))
            assert len(history) <= 5

    def test_byte_size_tracks_utf8(self) -> None:
        history = OutputHistory()
        history.append("ab")
        history.append("é")
        assert history.byte_size == 4

    def test_byte_cap_evicts_oldest(self) -> None:
        history = OutputHistory(max_chunks=100, max_bytes=10)
        history.append("aaaa")
        history.append("bbbb")
        history.append("cccc")
        assert history.snapshot() == ["bbbb", "cccc"]
        assert history.byte_size == 8

    def test_byte_cap_keeps_newest_oversized_chunk(self) -> None:
        history = OutputHistory(max_bytes=4)
        history.append("ab")
        history.append("0123456789")
        assert history.snapshot() == ["0123456789"]

    def test_byte_cap_off_by_default(self) -> None:
        history = OutputHistory(max_chunks=3)
        history.append("x" * 100_000)
        assert len(history) == 1
