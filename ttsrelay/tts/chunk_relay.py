"""
Push -> pull bridge between a connection's receive loop and the caller.

The receive loop publishes frames whenever the vendor sends them; the
caller pulls them lazily with `await relay.next()` or `async for`.

Design:
  1. Unbounded FIFO: frames are never dropped while the relay is open.
  2. One waiter slot: a publish either resolves the single pending
     next() or lands in the queue, never both and never neither.
  3. Terminal state is sticky: after complete()/fail(), next() drains
     what is queued and then stops (or raises) without suspending again.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque
from typing import Generic, Optional, TypeVar

from ..errors import RelayMisuseError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class RelayState(enum.Enum):
    OPEN = "open"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkRelay(Generic[T]):
    """Single-producer, single-consumer frame relay.

    Producer side: publish(), complete(), fail(). Never blocks.
    Consumer side: next() / async iteration. One outstanding next() at a time.
    """

    __slots__ = (
        "_name", "_queue", "_waiter", "_state", "_error",
        "_total_published", "_total_delivered",
    )

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._queue: deque[T] = deque()
        self._waiter: Optional[asyncio.Future] = None
        self._state = RelayState.OPEN
        self._error: Optional[BaseException] = None
        self._total_published = 0
        self._total_delivered = 0

    # ── producer side ──

    def publish(self, item: T) -> None:
        """Hand item to the waiting consumer, or queue it."""
        if self._state is not RelayState.OPEN:
            logger.debug("relay %s: dropping frame published after %s", self._name, self._state.value)
            return

        self._total_published += 1
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            self._total_delivered += 1
            waiter.set_result(item)
        else:
            self._queue.append(item)

    def complete(self) -> None:
        """Mark normal end of stream. No-op once terminal."""
        if self._state is not RelayState.OPEN:
            return
        self._state = RelayState.COMPLETED
        self._wake(_END)

    def fail(self, error: BaseException, *, discard_pending: bool = False) -> None:
        """Mark failure. No-op once terminal.

        With discard_pending the queued frames are dropped so the very next
        pull raises (used for caller cancellation).
        """
        if self._state is not RelayState.OPEN:
            return
        self._state = RelayState.FAILED
        self._error = error
        if discard_pending and self._queue:
            logger.debug("relay %s: discarding %d queued frames", self._name, len(self._queue))
            self._queue.clear()
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            waiter.set_exception(error)

    # ── consumer side ──

    async def next(self) -> T:
        """Return the oldest frame, waiting if none is queued.

        Raises:
            StopAsyncIteration: completed and drained.
            The stored error: failed and drained.
            RelayMisuseError: another next() is still outstanding.
        """
        if self._waiter is not None:
            raise RelayMisuseError(f"relay {self._name or '?'}: concurrent next() calls")

        if self._queue:
            self._total_delivered += 1
            return self._queue.popleft()
        if self._state is RelayState.COMPLETED:
            raise StopAsyncIteration
        if self._state is RelayState.FAILED:
            raise self._error

        waiter = asyncio.get_running_loop().create_future()
        self._waiter = waiter
        try:
            result = await waiter
        finally:
            if self._waiter is waiter:
                self._waiter = None

        if result is _END:
            raise StopAsyncIteration
        return result

    def __aiter__(self) -> "ChunkRelay[T]":
        return self

    async def __anext__(self) -> T:
        return await self.next()

    # ── introspection ──

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state is not RelayState.OPEN

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def has_waiter(self) -> bool:
        return self._waiter is not None

    @property
    def total_published(self) -> int:
        return self._total_published

    @property
    def total_delivered(self) -> int:
        return self._total_delivered

    def _wake(self, value: object) -> None:
        waiter = self._waiter
        if waiter is not None and not waiter.done():
            self._waiter = None
            waiter.set_result(value)
