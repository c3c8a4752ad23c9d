"""Hand-off queue feeding user input to the agent engine.

The queue is the engine's message source for one invocation. Producers
(inbound client messages) push items; the single consumer (the engine)
pulls them one at a time with next(), suspending while nothing is buffered.

Design:
    - If a consumer is already waiting, push() hands the item straight to it.
      Otherwise the item is buffered.
    - finish() releases every waiting consumer with END_OF_STREAM. Buffered
      items stay deliverable; clear() discards them explicitly.
    - push() after finish() is logged and ignored.

Usage:
    >>> queue = MessageQueue(session_id="sess_1")
    >>> queue.push({"type": "user", "message": {"role": "user", "content": "hi"}})
    >>> item = await queue.next()
    >>> queue.finish()
    >>> await queue.next() is END_OF_STREAM
    True
"""

import asyncio
from collections import deque
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _EndOfStream:
    """Sentinel returned by next() once the queue is finished and drained."""

    _instance: "_EndOfStream | None" = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


class MessageQueue(Generic[T]):
    """FIFO hand-off queue with blocking consumption.

    Attributes:
        session_id: Session this queue belongs to (for log correlation).
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._items: deque[T] = deque()
        self._waiters: deque[asyncio.Future[Any]] = deque()
        self._finished = False

    def push(self, item: T) -> None:
        """Deliver an item to a waiting consumer or buffer it.

        Args:
            item: The item to hand to the engine.
        """
        if self._finished:
            logger.warning(
                "message_queue_push_after_finish",
                session_id=self.session_id,
            )
            return

        while self._waiters:
            waiter = self._waiters.popleft()
            # A consumer cancelled while waiting leaves a done future behind
            if not waiter.done():
                waiter.set_result(item)
                logger.debug(
                    "message_queue_handoff",
                    session_id=self.session_id,
                )
                return

        self._items.append(item)
        logger.debug(
            "message_queue_buffered",
            session_id=self.session_id,
            queue_length=len(self._items),
        )

    async def next(self) -> T | _EndOfStream:
        """Return the next item, or END_OF_STREAM once finished and drained."""
        if self._items:
            return self._items.popleft()
        if self._finished:
            return END_OF_STREAM

        waiter: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if not waiter.done() or waiter.cancelled():
                self._discard_waiter(waiter)

    def finish(self) -> None:
        """Mark the queue finished and release every waiting consumer."""
        self._finished = True
        released = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(END_OF_STREAM)
                released += 1
        logger.debug(
            "message_queue_finished",
            session_id=self.session_id,
            released_waiters=released,
            undelivered=len(self._items),
        )

    def clear(self) -> None:
        """Discard buffered items without changing the finished state."""
        self._items.clear()

    def queue_length(self) -> int:
        return len(self._items)

    def is_finished(self) -> bool:
        return self._finished

    def waiter_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    def _discard_waiter(self, waiter: asyncio.Future[Any]) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def __aiter__(self) -> "MessageQueue[T]":
        return self

    async def __anext__(self) -> T:
        item = await self.next()
        if item is END_OF_STREAM:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]
