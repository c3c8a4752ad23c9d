"""Shared test fixtures for backend tests.

Provides a fake connection that records emitted notices and tracks
disconnect listeners, and a scripted engine with a call counter, so tests
never touch a real transport or agent engine.
"""

import sys
from collections.abc import AsyncIterator
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from session_registry import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from connection import AckCallback, DisconnectListener, DisconnectSignal  # noqa: E402
from engine.base import EngineRequest  # noqa: E402
from gateway import SessionGateway  # noqa: E402
from message_queue import END_OF_STREAM  # noqa: E402
from metrics import MetricsCollector  # noqa: E402
from query_orchestrator import QueryOrchestrator  # noqa: E402
from session_registry import SessionRegistry  # noqa: E402

# ---------------------------------------------------------------------------
# Fake Connection
# ---------------------------------------------------------------------------


class FakeConnection:
    """In-memory connection recording every emitted notice."""

    def __init__(self, connection_id: str = "conn_1") -> None:
        self.connection_id = connection_id
        self.emitted: list[tuple[str, Any]] = []
        self.acks: list[AckCallback] = []
        self.pending_acks: dict[str, AckCallback] = {}
        self.fail_emit = False
        self._connected = True
        self._signal = DisconnectSignal(connection_id)

    @property
    def connected(self) -> bool:
        return self._connected

    async def emit(
        self,
        event: str,
        data: Any = None,
        ack: AckCallback | None = None,
    ) -> str | None:
        if self.fail_emit:
            raise RuntimeError("socket closed")
        self.emitted.append((str(event), data))
        if ack is None:
            return None
        request_id = f"req_{len(self.acks)}"
        self.acks.append(ack)
        self.pending_acks[request_id] = ack
        return request_id

    def discard_ack(self, request_id: str) -> None:
        self.pending_acks.pop(request_id, None)

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._signal.add(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._signal.remove(listener)

    def listener_count(self) -> int:
        return self._signal.count()

    def disconnect(self) -> None:
        self._connected = False
        self._signal.fire()

    def notices(self, name: str) -> list[Any]:
        """Payloads of every emitted notice with the given type."""
        return [data for event, data in self.emitted if event == name]

    def respond(self, response: Any, index: int = -1) -> None:
        """Answer a hook request as the client would."""
        self.acks[index](response)


@pytest.fixture()
def connection() -> FakeConnection:
    return FakeConnection()


# ---------------------------------------------------------------------------
# Scripted Engine
# ---------------------------------------------------------------------------

# Script step: pull one message from the queue before continuing.
AWAIT_MESSAGE = "__await_message__"


class ScriptedQuery:
    """Engine invocation replaying a fixed script of raw events.

    Script steps are raw event dicts to yield, AWAIT_MESSAGE to pull one
    item from the message queue, or an exception instance to raise.
    """

    def __init__(self, engine: "ScriptedEngine", request: EngineRequest) -> None:
        self.engine = engine
        self.request = request
        self.received: list[Any] = []
        self.interrupted = False

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._run()

    async def interrupt(self) -> None:
        self.interrupted = True
        if self.engine.interrupt_error is not None:
            raise self.engine.interrupt_error

    async def _run(self) -> AsyncIterator[dict[str, Any]]:
        for step in self.engine.script:
            if step == AWAIT_MESSAGE:
                item = await self.request.messages.next()
                if item is END_OF_STREAM:
                    return
                self.received.append(item)
            elif isinstance(step, Exception):
                raise step
            else:
                yield step


class ScriptedEngine:
    """Engine factory with a call counter."""

    name = "scripted"

    def __init__(self, script: list[Any] | None = None) -> None:
        self.script: list[Any] = list(script or [])
        self.calls = 0
        self.queries: list[ScriptedQuery] = []
        self.interrupt_error: Exception | None = None

    def query(self, request: EngineRequest) -> ScriptedQuery:
        self.calls += 1
        query = ScriptedQuery(self, request)
        self.queries.append(query)
        return query


def text_delta(text: str) -> dict[str, Any]:
    return {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "text_delta", "text": text},
        },
    }


def assistant_message(text: str, uuid: str = "msg_1") -> dict[str, Any]:
    return {
        "type": "assistant",
        "uuid": uuid,
        "message": {"role": "assistant", "content": [{"type": "text", "text": text}]},
    }


def result_event(cost: float = 0.01, duration_ms: int = 120) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "total_cost_usd": cost,
        "duration_ms": duration_ms,
    }


@pytest.fixture()
def engine() -> ScriptedEngine:
    return ScriptedEngine()


# ---------------------------------------------------------------------------
# Session layer
# ---------------------------------------------------------------------------


@pytest.fixture()
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture()
def registry(metrics: MetricsCollector) -> SessionRegistry:
    return SessionRegistry(disconnect_grace_seconds=60.0, metrics_collector=metrics)


@pytest.fixture()
def orchestrator(
    registry: SessionRegistry,
    engine: ScriptedEngine,
    metrics: MetricsCollector,
) -> QueryOrchestrator:
    return QueryOrchestrator(
        registry,
        engine,
        metrics,
        hook_timeout=1.0,
        notify_only_hooks=["PostToolUse"],
        fallback_policy="open",
    )


@pytest.fixture()
def gateway(registry: SessionRegistry, orchestrator: QueryOrchestrator) -> SessionGateway:
    return SessionGateway(registry, orchestrator)
