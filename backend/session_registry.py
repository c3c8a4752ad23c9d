"""Session registry owning all per-client session state.

This module provides the SessionRegistry class, the single owner of every
Session record. A session outlives individual connections: a client can
disconnect and reattach within the grace period and find its history,
thread id and (possibly still running) engine invocation intact.

The registry coordinates:
- Session creation and resumption on reconnect
- Disconnect grace timers that destroy abandoned sessions
- Per-invocation resources: message queue, cancellation token, engine handle
- Thread switching and conversation history

Per-session state machine:
    no-session --create--> idle/connected
    idle --prepare_for_query--> running
    running --cleanup_query / interrupt_query--> idle
    connected --detach--> disconnected (grace timer pending)
    disconnected --resume--> connected (timer cancelled)
    disconnected --timer fires--> no-session

Concurrency:
    All handlers share one event loop. Code between two suspension points is
    atomic with respect to other handlers, so the registry needs no locks;
    anything that resumes after an await re-fetches the session by id
    instead of trusting a reference captured before the wait.

Usage:
    >>> registry = SessionRegistry()
    >>> registry.create("sandbox-123", connection)
    >>> registry.prepare_for_query("sandbox-123")
    >>> registry.detach("sandbox-123", connection)
    >>> registry.resume("sandbox-123", new_connection)
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

import structlog

from cancellation import CancellationToken
from config import settings
from connection import Connection
from engine.base import EngineQuery
from errors import InterruptError
from message_queue import MessageQueue
from metrics import MetricsCollector
from models.schemas import SessionSnapshot, StoredMessage

logger = structlog.get_logger(__name__)


@dataclass
class Session:
    """Server-side state for one logical client.

    Attributes:
        session_id: Stable identifier assigned by the caller (e.g. sandbox id).
        connection: Most recently attached transport endpoint, if any. Not
            owned: replaced wholesale on reconnect, cleared on detach.
        is_query_running: True only while an engine invocation is active.
        message_queue: Input queue of the active invocation (None when idle).
        cancellation: Token of the current (or last) invocation.
        engine_query: Handle of the running engine invocation.
        history: Conversation of the current thread, in insertion order.
        current_thread_id: Upstream thread represented by ``history``.
        cleanup_handle: Pending disconnect grace timer, if detached.
        created_at: Unix timestamp when the session was created.
    """

    session_id: str
    connection: Connection | None = None
    is_query_running: bool = False
    message_queue: MessageQueue[dict[str, Any]] | None = None
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    engine_query: EngineQuery | None = None
    history: list[StoredMessage] = field(default_factory=list)
    current_thread_id: str | None = None
    cleanup_handle: asyncio.TimerHandle | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self.connection.connected


class SessionRegistry:
    """Owns every Session and the timers and queues attached to them.

    Instantiated once at startup and passed to every collaborator that
    needs session state.

    Attributes:
        disconnect_grace_seconds: Default delay before an abandoned session
            is destroyed.
        metrics_collector: Optional collector whose totals are included in
            snapshots and discarded with the session.
    """

    def __init__(
        self,
        disconnect_grace_seconds: float | None = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        self.disconnect_grace_seconds = (
            settings.disconnect_grace_seconds
            if disconnect_grace_seconds is None
            else disconnect_grace_seconds
        )
        self.metrics_collector = metrics_collector
        self._sessions: dict[str, Session] = {}
        logger.info(
            "session_registry_initialized",
            disconnect_grace_seconds=self.disconnect_grace_seconds,
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def has(self, session_id: str) -> bool:
        return session_id in self._sessions

    def size(self) -> int:
        return len(self._sessions)

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def get_connection(self, session_id: str) -> Connection | None:
        """Return whatever connection is attached right now."""
        session = self._sessions.get(session_id)
        return session.connection if session is not None else None

    # -------------------------------------------------------------------------
    # Creation, resumption and teardown
    # -------------------------------------------------------------------------

    def create(self, session_id: str, connection: Connection) -> Session:
        """Create a new session with empty history and no thread.

        Args:
            session_id: Identifier assigned by the caller.
            connection: The connection that opened the session.

        Returns:
            The new Session.
        """
        logger.info(
            "session_created",
            session_id=session_id,
            connection_id=connection.connection_id,
        )
        session = Session(session_id=session_id, connection=connection)
        self._sessions[session_id] = session
        return session

    def resume(self, session_id: str, connection: Connection) -> Session | None:
        """Attach a new connection to an existing session.

        Any stale connection is replaced and the pending cleanup timer is
        cancelled.

        Returns:
            The session, or None if no session exists for the id.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        logger.info(
            "session_resumed",
            session_id=session_id,
            connection_id=connection.connection_id,
            is_query_running=session.is_query_running,
        )
        session.connection = connection
        self.cancel_cleanup(session_id)
        return session

    def detach(
        self,
        session_id: str,
        connection: Connection | None = None,
        delay: float | None = None,
    ) -> bool:
        """Drop the session's connection and start the grace timer.

        Args:
            session_id: The session to detach.
            connection: The connection that went away. When given and it is
                no longer the session's current connection (the client
                already reconnected), nothing happens.
            delay: Grace period override in seconds.

        Returns:
            True if the session was detached.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        if connection is not None and session.connection is not connection:
            logger.info(
                "session_detach_stale_connection",
                session_id=session_id,
                connection_id=connection.connection_id,
            )
            return False

        session.connection = None
        self.schedule_cleanup(session_id, delay)
        return True

    def schedule_cleanup(self, session_id: str, delay: float | None = None) -> None:
        """Start (or restart) the disconnect grace timer for a session."""
        session = self._sessions.get(session_id)
        if session is None:
            return

        delay = self.disconnect_grace_seconds if delay is None else delay
        if session.cleanup_handle is not None:
            session.cleanup_handle.cancel()

        loop = asyncio.get_running_loop()
        session.cleanup_handle = loop.call_later(delay, self._expire, session_id)
        logger.info(
            "session_cleanup_scheduled",
            session_id=session_id,
            delay_seconds=delay,
        )

    def cancel_cleanup(self, session_id: str) -> None:
        """Stop the grace timer, releasing its handle."""
        session = self._sessions.get(session_id)
        if session is None or session.cleanup_handle is None:
            return
        session.cleanup_handle.cancel()
        session.cleanup_handle = None
        logger.info("session_cleanup_cancelled", session_id=session_id)

    def _expire(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.cleanup_handle = None
        if session.connection is not None:
            # Reattached after the timer was already due
            return

        logger.info("session_grace_expired", session_id=session_id)
        self._destroy(session)

    def delete(self, session_id: str) -> bool:
        """Explicitly destroy a session.

        Returns:
            True if a session was removed.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if session.cleanup_handle is not None:
            session.cleanup_handle.cancel()
            session.cleanup_handle = None
        self._destroy(session)
        return True

    def _destroy(self, session: Session) -> None:
        session.cancellation.cancel()
        if session.message_queue is not None:
            session.message_queue.finish()
        session.is_query_running = False
        self._sessions.pop(session.session_id, None)
        if self.metrics_collector is not None:
            self.metrics_collector.discard(session.session_id)
        logger.info(
            "session_deleted",
            session_id=session.session_id,
            history_length=len(session.history),
        )

    def shutdown(self) -> None:
        """Destroy every session (application shutdown)."""
        logger.info("session_registry_shutdown", session_count=len(self._sessions))
        for session in list(self._sessions.values()):
            self.delete(session.session_id)

    # -------------------------------------------------------------------------
    # Invocation lifecycle
    # -------------------------------------------------------------------------

    def prepare_for_query(self, session_id: str) -> Session | None:
        """Allocate a fresh queue and token and mark the session running.

        Never suspends, so a message submitted right after this call is
        guaranteed to find the new queue.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        session.message_queue = MessageQueue(session_id=session_id)
        session.cancellation = CancellationToken()
        session.engine_query = None
        session.is_query_running = True
        logger.debug("session_prepared_for_query", session_id=session_id)
        return session

    def set_engine_query(
        self,
        session_id: str,
        engine_query: EngineQuery,
        cancellation: CancellationToken | None = None,
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        if cancellation is not None and session.cancellation is not cancellation:
            return
        session.engine_query = engine_query

    def cleanup_query(
        self,
        session_id: str,
        cancellation: CancellationToken | None = None,
    ) -> None:
        """Mark the session idle and drop invocation references.

        Args:
            session_id: The session whose invocation ended.
            cancellation: Token of the invocation calling this. When given
                and a newer invocation has replaced it, nothing is reset.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return
        if cancellation is not None and session.cancellation is not cancellation:
            logger.debug("session_cleanup_query_stale", session_id=session_id)
            return

        session.is_query_running = False
        session.engine_query = None
        session.message_queue = None
        logger.debug("session_query_cleaned_up", session_id=session_id)

    async def interrupt_query(self, session_id: str) -> None:
        """Stop the running invocation.

        Calls the engine's interrupt operation (failures are logged, not
        raised), then signals the cancellation token, finishes the queue and
        resets the session to idle. An invocation that started while the
        engine was interrupting is left running.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return

        cancellation = session.cancellation
        engine_query = session.engine_query
        if engine_query is not None:
            try:
                await engine_query.interrupt()
            except Exception as e:
                error = InterruptError(str(e))
                logger.error(
                    "session_interrupt_failed",
                    session_id=session_id,
                    error=str(error),
                )

        # Re-fetch: the session may have been removed while interrupting
        session = self._sessions.get(session_id)
        if session is None:
            return
        # A newer invocation started while interrupting; it is not ours to stop
        if session.cancellation is not cancellation:
            cancellation.cancel()
            logger.info("session_interrupt_superseded", session_id=session_id)
            return

        session.cancellation.cancel()
        if session.message_queue is not None:
            session.message_queue.finish()
        session.is_query_running = False
        session.engine_query = None
        session.message_queue = None
        logger.info("session_query_interrupted", session_id=session_id)

    # -------------------------------------------------------------------------
    # Threads and history
    # -------------------------------------------------------------------------

    def switch_thread(self, session_id: str, new_thread_id: str | None) -> None:
        """Clear history and track a different upstream thread.

        Switching to the thread already tracked changes nothing. Does not
        interrupt a running invocation; callers interrupt first when
        the switch must take effect immediately.
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("session_switch_thread_not_found", session_id=session_id)
            return
        if session.current_thread_id == new_thread_id:
            return

        logger.info(
            "session_thread_switched",
            session_id=session_id,
            from_thread_id=session.current_thread_id,
            to_thread_id=new_thread_id,
            cleared_messages=len(session.history),
        )
        session.history = []
        session.current_thread_id = new_thread_id

    def needs_thread_switch(self, session_id: str, requested_thread_id: str | None) -> bool:
        """Whether the requested thread differs from the tracked one.

        Both absent counts as equal.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return requested_thread_id != session.current_thread_id

    def record_thread_id(self, session_id: str, thread_id: str) -> None:
        """Record the upstream thread id reported by the engine."""
        session = self._sessions.get(session_id)
        if session is None or session.current_thread_id == thread_id:
            return
        logger.info(
            "session_thread_id_recorded",
            session_id=session_id,
            previous_thread_id=session.current_thread_id,
            thread_id=thread_id,
        )
        session.current_thread_id = thread_id

    def add_to_history(self, session_id: str, message: StoredMessage) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.history.append(message)

    def get_history(self, session_id: str) -> list[StoredMessage]:
        session = self._sessions.get(session_id)
        return list(session.history) if session is not None else []

    def clear_history(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.history = []

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def snapshot(self, session_id: str) -> SessionSnapshot | None:
        """Return a diagnostic snapshot of one session."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        queue = session.message_queue
        metrics = (
            self.metrics_collector.get(session_id)
            if self.metrics_collector is not None
            else None
        )
        return SessionSnapshot(
            session_id=session_id,
            is_connected=session.is_connected,
            is_query_running=session.is_query_running,
            has_message_queue=queue is not None,
            message_queue_finished=queue.is_finished() if queue is not None else False,
            message_queue_length=queue.queue_length() if queue is not None else 0,
            history_length=len(session.history),
            current_thread_id=session.current_thread_id,
            cleanup_pending=session.cleanup_handle is not None,
            invocations=metrics.invocations if metrics is not None else 0,
            total_cost_usd=metrics.total_cost_usd if metrics is not None else 0.0,
            total_duration_ms=metrics.total_duration_ms if metrics is not None else 0,
        )

    def get_debug_info(self) -> list[SessionSnapshot]:
        """Return snapshots for every session."""
        snapshots = []
        for session_id in list(self._sessions):
            snapshot = self.snapshot(session_id)
            if snapshot is not None:
                snapshots.append(snapshot)
        return snapshots
