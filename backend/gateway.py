"""Inbound session operations exposed to the transport.

SessionGateway is what the WebSocket handler talks to. Each method maps one
client command onto the session registry and the query orchestrator and
answers on the session's current connection.
"""

import time
import uuid
from typing import Any

import structlog

from connection import Connection
from events.types import NoticeType, error_payload, status_payload
from message_queue import MessageQueue
from models.schemas import QueryOptions, SessionSnapshot, StoredMessage
from query_orchestrator import QueryOrchestrator
from session_registry import Session, SessionRegistry

logger = structlog.get_logger(__name__)


def _history_payload(messages: list[StoredMessage]) -> dict[str, Any]:
    return {"messages": [message.model_dump(mode="json") for message in messages]}


class SessionGateway:
    """Create-or-resume, submit, interrupt, thread switching and history.

    Attributes:
        registry: Owner of all session state.
        orchestrator: Starts invocations and emits notices.
    """

    def __init__(self, registry: SessionRegistry, orchestrator: QueryOrchestrator) -> None:
        self.registry = registry
        self.orchestrator = orchestrator

    async def _emit(self, session_id: str, notice: str, data: Any = None) -> bool:
        return await self.orchestrator.emit(session_id, notice, data)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def attach(self, session_id: str, connection: Connection) -> Session:
        """Resume the session if it exists, otherwise create it.

        On resume the client gets a "Session resumed" status followed by the
        stored history, when there is any.
        """
        logger.info(
            "client_connected",
            session_id=session_id,
            connection_id=connection.connection_id,
            direction="in",
        )
        session = self.registry.resume(session_id, connection)
        if session is None:
            return self.registry.create(session_id, connection)

        await self._emit(session_id, NoticeType.STATUS, status_payload("Session resumed"))
        history = self.registry.get_history(session_id)
        if history:
            logger.info(
                "history_replayed",
                session_id=session_id,
                message_count=len(history),
                direction="out",
            )
            await self._emit(session_id, NoticeType.HISTORY, _history_payload(history))
        return session

    def detach(self, session_id: str, connection: Connection | None = None) -> bool:
        """Begin the disconnect grace period for the session."""
        logger.info(
            "client_disconnected",
            session_id=session_id,
            connection_id=connection.connection_id if connection is not None else None,
        )
        return self.registry.detach(session_id, connection)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def start(self, session_id: str, options: QueryOptions | None = None) -> None:
        """Explicitly start the engine loop ahead of the first message."""
        logger.info("start_requested", session_id=session_id, direction="in")
        self.orchestrator.start(session_id, options)
        await self._emit(session_id, NoticeType.STATUS, status_payload("Session initialized"))

    async def submit(
        self,
        session_id: str,
        prompt: str,
        options: QueryOptions | None = None,
    ) -> bool:
        """Store a user message and hand it to the engine.

        Switches threads first when ``options.resume`` differs from the
        tracked thread, and starts an invocation when none is running.

        Returns:
            True if the message reached a message queue.
        """
        options = options or QueryOptions()
        # An empty resume id starts a new thread, same as none
        if options.resume == "":
            options = options.model_copy(update={"resume": None})
        if self.registry.get(session_id) is None:
            logger.warning("message_session_not_found", session_id=session_id)
            return False

        logger.info(
            "message_received",
            session_id=session_id,
            prompt_length=len(prompt),
            resume=options.resume,
            direction="in",
        )

        if self.registry.needs_thread_switch(session_id, options.resume):
            await self.request_thread_switch(session_id, options.resume)

        self.registry.add_to_history(
            session_id,
            StoredMessage(role="user", content=prompt, uuid=str(uuid.uuid4())),
        )

        session = self.registry.get(session_id)
        if session is not None and not session.is_query_running:
            self.orchestrator.start(session_id, options)

        session = self.registry.get(session_id)
        queue: MessageQueue[dict[str, Any]] | None = (
            session.message_queue if session is not None else None
        )
        if queue is None:
            logger.error(
                "message_queue_unavailable",
                session_id=session_id,
                has_session=session is not None,
            )
            await self._emit(
                session_id,
                NoticeType.ERROR,
                error_payload(
                    "Agent not ready - please try again",
                    details="Query initialization may have failed",
                ),
            )
            return False

        queue.push(
            {
                "type": "user",
                "session_id": session_id,
                "message": {"role": "user", "content": prompt},
                "parent_tool_use_id": None,
            }
        )
        return True

    async def interrupt(
        self,
        session_id: str,
        thread_id: str | None = None,
        reason: str = "user_interrupt",
    ) -> None:
        """Stop the running invocation.

        With a thread id the client is told ``interrupt_complete`` (it is
        about to switch threads); otherwise it gets an "Interrupted" status.
        """
        logger.info(
            "interrupt_requested",
            session_id=session_id,
            thread_id=thread_id,
            reason=reason,
            direction="in",
        )
        exists = self.registry.has(session_id)
        if exists:
            await self.registry.interrupt_query(session_id)

        if thread_id:
            await self._emit(
                session_id,
                NoticeType.INTERRUPT_COMPLETE,
                {
                    "threadId": thread_id,
                    "success": True,
                    "sessionId": session_id if exists else None,
                },
            )
        elif exists:
            await self._emit(session_id, NoticeType.STATUS, status_payload("Interrupted"))

    async def request_thread_switch(self, session_id: str, thread_id: str | None) -> None:
        """Interrupt a running invocation, then move to another thread.

        Pending input meant for the old thread is discarded.
        """
        session = self.registry.get(session_id)
        if session is None:
            return

        logger.info(
            "thread_switch_requested",
            session_id=session_id,
            from_thread_id=session.current_thread_id,
            to_thread_id=thread_id,
        )
        if session.message_queue is not None:
            session.message_queue.clear()
        if session.is_query_running:
            await self.registry.interrupt_query(session_id)

        self.registry.switch_thread(session_id, thread_id)

    async def clear(self, session_id: str) -> None:
        """Interrupt any running invocation and drop the conversation."""
        if not self.registry.has(session_id):
            return
        await self.registry.interrupt_query(session_id)
        self.registry.clear_history(session_id)
        logger.info("session_cleared", session_id=session_id)
        await self._emit(session_id, NoticeType.CLEARED, status_payload("Session cleared"))

    async def send_history(self, session_id: str) -> None:
        history = self.registry.get_history(session_id)
        logger.info(
            "history_sent",
            session_id=session_id,
            message_count=len(history),
            direction="out",
        )
        await self._emit(session_id, NoticeType.HISTORY, _history_payload(history))

    def get_history(self, session_id: str) -> list[StoredMessage]:
        return self.registry.get_history(session_id)

    def snapshot(self, session_id: str) -> SessionSnapshot | None:
        return self.registry.snapshot(session_id)

    async def diagnostics(self, session_id: str) -> dict[str, Any]:
        """Emit and return a diagnostic snapshot of the session."""
        snapshot = self.registry.snapshot(session_id)
        connection = self.registry.get_connection(session_id)
        payload: dict[str, Any] = (
            snapshot.model_dump()
            if snapshot is not None
            else {"session_id": session_id, "is_query_running": False, "history_length": 0}
        )
        payload["connection_id"] = connection.connection_id if connection is not None else None
        payload["timestamp"] = time.time()
        await self._emit(session_id, NoticeType.DIAGNOSTICS, payload)
        return payload
