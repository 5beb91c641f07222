"""Bounded output history for terminal sessions."""

from __future__ import annotations

import threading
from collections import deque


class OutputHistory:
    """Thread-safe sliding window of output chunks.

    Keeps at most ``max_chunks`` chunks in arrival order; the oldest chunk
    is evicted first. Chunks are stored exactly as produced (ANSI codes
    included) so a re-attaching terminal can replay them verbatim.

    ``max_bytes`` optionally bounds the total UTF-8 size as well. It is
    off by default, in which case only the chunk count is enforced. The
    newest chunk is always kept, even if it alone exceeds ``max_bytes``.
    """

    def __init__(self, max_chunks: int = 1000, max_bytes: int | None = None) -> None:
        if max_chunks < 1:
            raise ValueError("max_chunks must be >= 1")
        self._chunks: deque[str] = deque()
        self._sizes: deque[int] = deque()
        self._max_chunks = max_chunks
        self._max_bytes = max_bytes
        self._byte_size = 0
        self._total_chunks = 0  # Total chunks ever added
        self._lock = threading.Lock()

    def append(self, chunk: str) -> None:
        """Append a chunk, evicting from the front to stay within limits."""
        if not chunk:
            return
        size = len(chunk.encode("utf-8", errors="replace"))
        with self._lock:
            self._chunks.append(chunk)
            self._sizes.append(size)
            self._byte_size += size
            self._total_chunks += 1
            while len(self._chunks) > self._max_chunks:
                self._evict_oldest()
            if self._max_bytes is not None:
                while self._byte_size > self._max_bytes and len(self._chunks) > 1:
                    self._evict_oldest()

    def _evict_oldest(self) -> None:
        self._chunks.popleft()
        self._byte_size -= self._sizes.popleft()

    def snapshot(self) -> list[str]:
        """Copy of the buffered chunks, oldest first."""
        with self._lock:
            return list(self._chunks)

    def read_all(self) -> str:
        """All buffered output joined into a single string."""
        with self._lock:
            return "".join(self._chunks)

    def read_tail(self, n: int = 10) -> list[str]:
        """Read the last N chunks."""
        with self._lock:
            chunks = list(self._chunks)
        return chunks[-n:] if len(chunks) > n else chunks

    @property
    def max_chunks(self) -> int:
        return self._max_chunks

    @property
    def byte_size(self) -> int:
        """UTF-8 size of the buffered chunks."""
        with self._lock:
            return self._byte_size

    @property
    def total_chunks(self) -> int:
        """Total number of chunks ever added."""
        with self._lock:
            return self._total_chunks

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._sizes.clear()
            self._byte_size = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)
