"""Outbound transport channel: non-blocking delivery to a remote UI."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """What the bridge needs from a duplex channel (e.g. a FastAPI WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class TransportChannel:
    """A bounded outbound queue drained into one transport by a pump task.

    ``send()`` never blocks: when the queue is full the message is
    dropped and counted. A failing send stops the pump and reports the
    channel through ``on_failure`` so the owner can clear its binding.
    No backpressure reaches the producer.
    """

    def __init__(
        self,
        transport: Transport,
        maxsize: int = 1024,
        on_failure: Callable[[TransportChannel], None] | None = None,
    ) -> None:
        self.transport = transport
        self.dropped = 0
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize)
        self._on_failure = on_failure
        self._closed = False
        self._task = asyncio.create_task(self._pump())

    def send(self, payload: dict[str, Any]) -> bool:
        """Queue a JSON payload. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Transport queue full, dropped %s message (%d dropped so far)",
                payload.get("type"),
                self.dropped,
            )
            return False
        return True

    async def _pump(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            try:
                await self.transport.send_json(payload)
            except Exception as e:
                logger.warning("Transport send failed, detaching: %s", e)
                self._closed = True
                if self._on_failure is not None:
                    self._on_failure(self)
                return

    @property
    def closed(self) -> bool:
        return self._closed

    def cancel(self) -> None:
        """Stop delivering without touching the transport itself."""
        self._closed = True
        self._task.cancel()

    async def close(self, close_transport: bool = True, timeout: float = 1.0) -> None:
        """Flush queued messages (bounded by ``timeout``), then close.

        When ``close_transport`` is set the underlying transport is closed
        too; errors doing so are logged and ignored.
        """
        if not self._closed:
            self._closed = True
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                self._task.cancel()
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        if not done:
            self._task.cancel()
        if close_transport:
            try:
                await self.transport.close()
            except Exception as e:
                logger.debug("Error closing transport: %s", e)
