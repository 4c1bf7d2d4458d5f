"""
Bounded event subscriptions

A subscription is an async iterator over one kind of routed item, optionally
restricted to one room. Its queue is bounded: when a consumer falls behind,
the router waits for room in the queue instead of buffering without limit.
"""

import asyncio
from collections.abc import Callable
from typing import Any

from ..log import get_logger

logger = get_logger("sync.subscription")

# Kinds of routed items
KIND_DECRYPTED = "decrypted"
KIND_FAILED = "failed"
KIND_MESSAGE = "message"
# Both decrypted and failed outcomes, in arrival order
KIND_OUTCOME = "outcome"
KINDS = (KIND_DECRYPTED, KIND_FAILED, KIND_MESSAGE, KIND_OUTCOME)
OUTCOME_KINDS = (KIND_DECRYPTED, KIND_FAILED)

_CLOSED = object()


class Subscription:
    """Async-iterable, closable stream of routed items"""

    # Seconds between checks for close() while the queue is full
    put_poll_interval = 0.5

    def __init__(
        self,
        kind: str,
        room_id: str | None = None,
        maxsize: int = 100,
        on_close: Callable[["Subscription"], None] | None = None,
    ):
        if kind not in KINDS:
            raise ValueError(f"Unknown subscription kind: {kind}")
        self.kind = kind
        self.room_id = room_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, kind: str, room_id: str | None) -> bool:
        return (
            not self._closed
            and (
                kind == self.kind
                or (self.kind == KIND_OUTCOME and kind in OUTCOME_KINDS)
            )
            and (self.room_id is None or self.room_id == room_id)
        )

    async def put(self, item: Any) -> bool:
        """
        Queue an item, waiting while the queue is full

        Returns:
            False if the subscription was closed before the item was queued
        """
        while not self._closed:
            try:
                await asyncio.wait_for(
                    self._queue.put(item), self.put_poll_interval
                )
                return True
            except asyncio.TimeoutError:
                continue
        return False

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Any:
        """
        Next item

        Raises:
            StopAsyncIteration: the subscription is closed and drained
        """
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self):
        """Stop the subscription; already queued items can still be read"""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # get() notices the close once the queue drains
            pass
        if self._on_close:
            self._on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        return await self.get()
