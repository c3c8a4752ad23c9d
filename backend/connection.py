"""Connection contract between the session layer and the transport.

A session holds at most one current connection. The session layer never owns
a connection's lifetime: it only emits notices on it, optionally with a
response channel (ack callback) identified by the returned request id, and
listens for its one-shot disconnect notification while a hook request is
pending. A settled request discards its response channel.
"""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)

AckCallback = Callable[[Any], None]
DisconnectListener = Callable[[], None]


@runtime_checkable
class Connection(Protocol):
    """Transport endpoint for one attached client."""

    connection_id: str

    @property
    def connected(self) -> bool: ...

    async def emit(
        self,
        event: str,
        data: Any = None,
        ack: AckCallback | None = None,
    ) -> str | None: ...

    def discard_ack(self, request_id: str) -> None: ...

    def add_disconnect_listener(self, listener: DisconnectListener) -> None: ...

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None: ...


class DisconnectSignal:
    """One-shot disconnect notification with listener bookkeeping.

    Listeners registered before fire() are called once and dropped. Listeners
    registered afterwards are called immediately, since the connection is
    already gone.
    """

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self._listeners: list[DisconnectListener] = []
        self._fired = False

    @property
    def fired(self) -> bool:
        return self._fired

    def add(self, listener: DisconnectListener) -> None:
        if self._fired:
            listener()
            return
        self._listeners.append(listener)

    def remove(self, listener: DisconnectListener) -> None:
        self._listeners = [cb for cb in self._listeners if cb is not listener]

    def count(self) -> int:
        return len(self._listeners)

    def fire(self) -> None:
        if self._fired:
            return
        self._fired = True
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logger.error(
                    "disconnect_listener_failed",
                    connection_id=self.connection_id,
                    error=str(e),
                )
