"""Cancellation tokens and the bounded chunk channel between producer and consumer."""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any


class CancellationToken:
    """Cooperative stop flag.

    Backed by a ``threading.Event`` so engines generating in worker threads
    can poll it between tokens.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class ChannelClosed(Exception):
    """Raised by ``ChunkChannel.receive`` once the channel has been closed."""


class _Marker:
    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


END_OF_STREAM = _Marker("END_OF_STREAM")
_CLOSED = _Marker("CLOSED")


@dataclass(frozen=True)
class StreamFailure:
    error: BaseException


class ChunkChannel:
    """Bounded single-producer, single-consumer channel of stream items.

    Items are text deltas, ``END_OF_STREAM`` or a ``StreamFailure``.
    ``close()`` drops anything still buffered and wakes the consumer; after
    that no item is ever handed out again, whatever the producer sends.
    """

    def __init__(self, maxsize: int = 32) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._maxsize = maxsize
        # capacity is held by the semaphore so close() can always enqueue its marker
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._slots = asyncio.Semaphore(maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: Any) -> bool:
        """Enqueue *item*, waiting for space. Returns False once closed."""
        if self._closed:
            return False
        await self._slots.acquire()
        if self._closed:
            return False
        self._queue.put_nowait(item)
        return True

    async def receive(self) -> Any:
        if self._closed:
            raise ChannelClosed
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            raise ChannelClosed
        self._slots.release()
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(_CLOSED)
        # wake any sender parked on a full channel; it sees the flag and bails
        for _ in range(self._maxsize):
            self._slots.release()

    def __repr__(self) -> str:
        return f"ChunkChannel(maxsize={self._maxsize}, closed={self._closed})"


def extract_delta(chunk: Any) -> str:
    """Pull the incremental text out of one engine chunk.

    Accepts ``ChatChunk``-like objects with a ``delta`` attribute, plain
    strings, and OpenAI-style dicts (``choices[0].delta.content``). Anything
    without text yields an empty delta.
    """
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, dict):
        choices = chunk.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] if isinstance(choices[0], dict) else {}
            delta = first.get("delta")
            if isinstance(delta, dict):
                return delta.get("content") or ""
            return ""
        delta = chunk.get("delta")
        return delta if isinstance(delta, str) else ""
    delta = getattr(chunk, "delta", None)
    return delta if isinstance(delta, str) else ""
