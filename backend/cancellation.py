"""Cancellation token shared by one engine invocation.

The token is signalled once. Callbacks registered on it run synchronously
inside cancel(), which is how pending hook waits are released without
another trip through the event loop.
"""

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """One-shot stop signal observed by the engine and the hook broker."""

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Signal cancellation and run every registered callback once."""
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error("cancellation_callback_failed", error=str(e))

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        self._callbacks = [cb for cb in self._callbacks if cb is not callback]

    def callback_count(self) -> int:
        return len(self._callbacks)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        await self._event.wait()
