"""Query orchestrator driving one engine invocation per session.

The orchestrator wires the session registry, the hook broker and the engine
together. start() prepares the session synchronously and runs the engine in
a background task that consumes the engine's output strictly in order,
routing each decoded event to the client and to history:

    TextDelta / JsonDelta   -> stream chunk (not persisted) + raw stream_event
    StreamMarker            -> debug log + raw stream_event
    AssistantMessage        -> persisted, forwarded as a message
    UserMessage             -> forwarded as a message (already stored on submit)
    SystemInit              -> thread id recorded, forwarded as system/init
    CompactBoundary         -> compact_boundary marker
    SystemNotice            -> raw system event
    ResultMetrics           -> result metrics, recorded in the collector
    UnknownEvent            -> forwarded verbatim as sdk_event

Whatever happens (completion, engine failure, interrupt), cleanup_query runs
for the invocation's own cancellation token.
"""

import asyncio
import contextlib
from typing import Any

import structlog

from cancellation import CancellationToken
from config import settings
from engine.base import AgentEngine, EngineRequest
from engine.events import (
    AssistantMessage,
    CompactBoundary,
    EngineEvent,
    JsonDelta,
    ResultMetrics,
    StreamMarker,
    SystemInit,
    SystemNotice,
    TextDelta,
    UnknownEvent,
    UserMessage,
    decode_engine_event,
)
from errors import EngineError, TransportError
from events.types import NoticeType, error_payload
from hooks import FallbackPolicy, HookBroker
from message_queue import MessageQueue
from metrics import MetricsCollector
from models.schemas import QueryOptions, StoredMessage
from session_registry import SessionRegistry

logger = structlog.get_logger(__name__)


class QueryOrchestrator:
    """Starts engine invocations and routes their output.

    Attributes:
        registry: Owner of all session state.
        engine: Factory for engine invocations.
        metrics_collector: Optional sink for invocation and result metrics.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        engine: AgentEngine,
        metrics_collector: MetricsCollector | None = None,
        *,
        hook_timeout: float | None = None,
        notify_only_hooks: list[str] | None = None,
        fallback_policy: FallbackPolicy | None = None,
    ) -> None:
        self.registry = registry
        self.engine = engine
        self.metrics_collector = metrics_collector
        self.hook_timeout = (
            settings.hook_timeout_seconds if hook_timeout is None else hook_timeout
        )
        self.notify_only_hooks = (
            list(settings.notify_only_hooks)
            if notify_only_hooks is None
            else notify_only_hooks
        )
        self.fallback_policy: FallbackPolicy = (
            settings.hook_fallback_policy if fallback_policy is None else fallback_policy
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # -------------------------------------------------------------------------
    # Emitting
    # -------------------------------------------------------------------------

    async def emit(self, session_id: str, notice: str, data: Any = None) -> bool:
        """Emit a notice on whatever connection the session has right now.

        Returns:
            True if the notice was handed to a connected client.
        """
        connection = self.registry.get_connection(session_id)
        try:
            if connection is None or not connection.connected:
                raise TransportError(notice, session_id)
            await connection.emit(notice, data)
            return True
        except TransportError as e:
            logger.warning(
                "notice_dropped",
                session_id=session_id,
                notice=str(notice),
                error=str(e),
            )
        except Exception as e:
            logger.warning(
                "notice_emit_failed",
                session_id=session_id,
                notice=str(notice),
                error=str(e),
            )
        return False

    # -------------------------------------------------------------------------
    # Invocation lifecycle
    # -------------------------------------------------------------------------

    def is_running(self, session_id: str) -> bool:
        session = self.registry.get(session_id)
        return session is not None and session.is_query_running

    def start(
        self,
        session_id: str,
        options: QueryOptions | None = None,
    ) -> asyncio.Task[None] | None:
        """Start an engine invocation for a session.

        A no-op when the session does not exist or already runs one. The
        session is prepared before this returns, so a message pushed right
        afterwards lands in the new queue.

        Args:
            session_id: The session to start.
            options: Query options from the client.

        Returns:
            The background task running the invocation, or None.
        """
        session = self.registry.get(session_id)
        if session is None:
            logger.warning("query_start_session_not_found", session_id=session_id)
            return None
        if session.is_query_running:
            logger.info("query_already_running", session_id=session_id)
            return None

        session = self.registry.prepare_for_query(session_id)
        if session is None or session.message_queue is None:
            return None

        resolved = self._resolve_options(options)
        cancellation = session.cancellation
        messages = session.message_queue

        if self.metrics_collector is not None:
            self.metrics_collector.record_invocation(session_id)

        logger.info(
            "query_started",
            session_id=session_id,
            model=resolved.get("model"),
            resume=resolved.get("resume"),
        )

        task = asyncio.create_task(
            self._run(session_id, resolved, cancellation, messages),
            name=f"query_{session_id}",
        )
        self._tasks[session_id] = task

        def _remove_task(t: asyncio.Task[None], sid: str = session_id) -> None:
            if self._tasks.get(sid) is t:
                self._tasks.pop(sid, None)

        task.add_done_callback(_remove_task)
        return task

    def _resolve_options(self, options: QueryOptions | None) -> dict[str, Any]:
        resolved: dict[str, Any] = {
            "model": settings.default_model,
            "cwd": settings.default_cwd,
            "allowed_tools": list(settings.default_allowed_tools),
        }
        if options is not None:
            resolved.update(options.model_dump(exclude_none=True))
        return resolved

    async def _run(
        self,
        session_id: str,
        options: dict[str, Any],
        cancellation: CancellationToken,
        messages: MessageQueue[dict[str, Any]],
    ) -> None:
        broker = HookBroker(
            session_id,
            get_connection=lambda: self.registry.get_connection(session_id),
            cancellation=cancellation,
            on_thread_id=lambda thread_id: self.registry.record_thread_id(
                session_id, thread_id
            ),
            notify_only=self.notify_only_hooks,
            timeout=self.hook_timeout,
            fallback_policy=self.fallback_policy,
        )
        broker.reset_thread_id_capture()

        async def on_stderr(line: str) -> None:
            await self.emit(session_id, NoticeType.STDERR, {"data": line})

        request = EngineRequest(
            session_id=session_id,
            messages=messages,
            options=options,
            cancellation=cancellation,
            hooks=broker.create_all_hooks(),
            on_stderr=on_stderr,
        )

        event_count = 0
        try:
            engine_query = self.engine.query(request)
            self.registry.set_engine_query(session_id, engine_query, cancellation)

            async for raw in engine_query:
                event_count += 1
                await self._route(session_id, decode_engine_event(raw))

            logger.info(
                "query_completed",
                session_id=session_id,
                event_count=event_count,
                cancelled=cancellation.cancelled,
            )
        except asyncio.CancelledError:
            logger.info("query_task_cancelled", session_id=session_id)
            raise
        except Exception as e:
            error = EngineError(str(e) or type(e).__name__, details=repr(e))
            logger.error(
                "query_failed",
                session_id=session_id,
                event_count=event_count,
                error=str(error),
                error_type=type(e).__name__,
            )
            await self.emit(
                session_id,
                NoticeType.ERROR,
                error_payload(str(error), details=str(error.details)),
            )
        finally:
            self.registry.cleanup_query(session_id, cancellation)

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    async def _route(self, session_id: str, event: EngineEvent) -> None:
        if isinstance(event, TextDelta):
            await self.emit(session_id, NoticeType.STREAM, {"type": "text", "content": event.text})
            await self.emit(session_id, NoticeType.STREAM_EVENT, event.raw)
        elif isinstance(event, JsonDelta):
            await self.emit(
                session_id, NoticeType.STREAM, {"type": "json", "content": event.partial_json}
            )
            await self.emit(session_id, NoticeType.STREAM_EVENT, event.raw)
        elif isinstance(event, StreamMarker):
            logger.debug(
                "engine_stream_marker",
                session_id=session_id,
                marker=event.event_type,
                index=event.index,
            )
            await self.emit(session_id, NoticeType.STREAM_EVENT, event.raw)
        elif isinstance(event, AssistantMessage):
            self.registry.add_to_history(
                session_id,
                StoredMessage(role="assistant", content=event.content, uuid=event.uuid),
            )
            await self.emit(
                session_id,
                NoticeType.MESSAGE,
                {"role": "assistant", "content": event.content, "uuid": event.uuid},
            )
        elif isinstance(event, UserMessage):
            await self.emit(
                session_id,
                NoticeType.MESSAGE,
                {"role": "user", "content": event.content, "uuid": event.uuid},
            )
        elif isinstance(event, SystemInit):
            self.registry.record_thread_id(session_id, event.thread_id)
            await self.emit(
                session_id,
                NoticeType.MESSAGE,
                {"role": "system", "subtype": "init", "session_id": event.thread_id},
            )
        elif isinstance(event, CompactBoundary):
            logger.info("engine_compact_boundary", session_id=session_id)
            await self.emit(session_id, NoticeType.COMPACT_BOUNDARY, event.raw)
        elif isinstance(event, SystemNotice):
            await self.emit(session_id, NoticeType.SYSTEM, event.raw)
        elif isinstance(event, ResultMetrics):
            if self.metrics_collector is not None:
                self.metrics_collector.record_result(
                    session_id,
                    cost_usd=event.cost_usd,
                    duration_ms=event.duration_ms,
                    is_error=event.is_error,
                )
            logger.info(
                "engine_result",
                session_id=session_id,
                cost_usd=event.cost_usd,
                duration_ms=event.duration_ms,
                is_error=event.is_error,
            )
            await self.emit(session_id, NoticeType.RESULT, event.raw)
        elif isinstance(event, UnknownEvent):
            logger.debug(
                "engine_unknown_event",
                session_id=session_id,
                event_type=event.event_type,
            )
            await self.emit(session_id, NoticeType.SDK_EVENT, event.raw)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel every running invocation task."""
        tasks = list(self._tasks.values())
        logger.info("query_orchestrator_shutdown", task_count=len(tasks))
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
