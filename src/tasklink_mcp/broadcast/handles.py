"""Subscriber connection handles."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Protocol


class SubscriberWriteError(RuntimeError):
    """Raised when a message cannot be written to a subscriber."""


class SubscriberHandle(Protocol):
    """Outbound side of one subscriber connection."""

    def send(self, message: str) -> None:
        ...

    def close(self) -> None:
        ...

    def on_close(self, callback: Callable[[], None]) -> None:
        ...


def format_sse(event_name: str, payload: Any) -> str:
    """Serialize one server-sent-event frame."""

    return f"event: {event_name}\ndata: {json.dumps(payload, default=str)}\n\n"


class StreamSubscriber:
    """Queue-backed handle drained by a streaming HTTP response.

    ``send`` never blocks: a closed stream or a backlog of ``max_pending``
    undelivered frames raises :class:`SubscriberWriteError` so the broadcaster
    can drop the subscriber.
    """

    def __init__(self, *, max_pending: int = 256) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._max_pending = max_pending
        self._closed = False
        self._close_callbacks: list[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def send(self, message: str) -> None:
        if self._closed:
            raise SubscriberWriteError("stream is closed")
        if self._queue.qsize() >= self._max_pending:
            raise SubscriberWriteError(f"stream backlog exceeded {self._max_pending} frames")
        self._queue.put_nowait(message)

    def on_close(self, callback: Callable[[], None]) -> None:
        if self._closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the stream is closed."""

        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    break
                yield frame
        finally:
            self.close()


__all__ = ["StreamSubscriber", "SubscriberHandle", "SubscriberWriteError", "format_sse"]
