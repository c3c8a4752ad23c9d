"""Tests for session_registry.py -- session state, grace timers, threads.

Covers create/resume, the disconnect grace timer, invocation preparation
and cleanup (including the stale-invocation guard), interrupts, thread
switching, history and diagnostic snapshots.
"""

import asyncio

from cancellation import CancellationToken
from message_queue import END_OF_STREAM
from metrics import MetricsCollector
from models.schemas import StoredMessage
from session_registry import SessionRegistry
from tests.conftest import FakeConnection

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _message(role: str = "user", content: str = "hi") -> StoredMessage:
    return StoredMessage(role=role, content=content)  # type: ignore[arg-type]


class _FailingQuery:
    def __aiter__(self):  # pragma: no cover - never iterated
        raise NotImplementedError

    async def interrupt(self) -> None:
        raise RuntimeError("engine gone")


class _SlowQuery:
    """Interrupt that suspends long enough for a successor invocation to start."""

    def __aiter__(self):  # pragma: no cover - never iterated
        raise NotImplementedError

    async def interrupt(self) -> None:
        await asyncio.sleep(0.05)


# =========================================================================
# Create / resume
# =========================================================================


class TestCreateResume:
    """Session creation and reattachment."""

    def test_create_starts_idle_and_empty(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        session = registry.create("S1", connection)

        assert session.connection is connection
        assert session.history == []
        assert session.current_thread_id is None
        assert session.is_query_running is False
        assert session.message_queue is None
        assert registry.has("S1")

    def test_resume_unknown_session_returns_none(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        assert registry.resume("missing", connection) is None

    async def test_resume_replaces_connection_and_cancels_timer(
        self, registry: SessionRegistry
    ) -> None:
        old, new = FakeConnection("old"), FakeConnection("new")
        registry.create("S1", old)
        registry.detach("S1", old)
        assert registry.get("S1").cleanup_handle is not None

        session = registry.resume("S1", new)

        assert session is not None
        assert session.connection is new
        assert session.cleanup_handle is None

    def test_get_connection(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        assert registry.get_connection("S1") is connection
        assert registry.get_connection("missing") is None


# =========================================================================
# Disconnect grace
# =========================================================================


class TestDisconnectGrace:
    """Grace timer lifecycle."""

    async def test_reattach_within_grace_preserves_state(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.add_to_history("S1", _message())
        registry.record_thread_id("S1", "thread_a")

        registry.detach("S1", connection, delay=0.05)
        registry.resume("S1", FakeConnection("conn_2"))
        await asyncio.sleep(0.1)

        session = registry.get("S1")
        assert session is not None
        assert len(session.history) == 1
        assert session.current_thread_id == "thread_a"

    async def test_grace_expiry_removes_session_and_finishes_queue(
        self,
        registry: SessionRegistry,
        connection: FakeConnection,
        metrics: MetricsCollector,
    ) -> None:
        registry.create("S1", connection)
        session = registry.prepare_for_query("S1")
        queue = session.message_queue
        token = session.cancellation
        metrics.record_invocation("S1")

        registry.detach("S1", connection, delay=0.01)
        await asyncio.sleep(0.05)

        assert registry.get("S1") is None
        assert queue.is_finished()
        assert token.cancelled
        assert metrics.get("S1") is None

    async def test_detach_by_stale_connection_is_ignored(
        self, registry: SessionRegistry
    ) -> None:
        old, new = FakeConnection("old"), FakeConnection("new")
        registry.create("S1", old)
        registry.resume("S1", new)

        assert registry.detach("S1", old) is False
        session = registry.get("S1")
        assert session.connection is new
        assert session.cleanup_handle is None

    async def test_schedule_cleanup_restarts_timer(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.detach("S1", connection, delay=0.02)
        first = registry.get("S1").cleanup_handle
        registry.schedule_cleanup("S1", 60.0)

        assert first.cancelled()
        await asyncio.sleep(0.05)
        assert registry.has("S1")

    async def test_cancel_cleanup(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.detach("S1", connection, delay=0.01)
        registry.cancel_cleanup("S1")
        await asyncio.sleep(0.03)

        assert registry.has("S1")
        assert registry.get("S1").cleanup_handle is None

    def test_delete(self, registry: SessionRegistry, connection: FakeConnection) -> None:
        registry.create("S1", connection)
        assert registry.delete("S1") is True
        assert registry.delete("S1") is False
        assert registry.size() == 0


# =========================================================================
# Invocation lifecycle
# =========================================================================


class TestInvocationLifecycle:
    """prepare_for_query / cleanup_query / interrupt_query."""

    def test_prepare_allocates_fresh_queue_and_token(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        first_token = registry.get("S1").cancellation

        session = registry.prepare_for_query("S1")

        assert session.is_query_running is True
        assert session.message_queue is not None
        assert session.cancellation is not first_token

    def test_prepare_unknown_session(self, registry: SessionRegistry) -> None:
        assert registry.prepare_for_query("missing") is None

    def test_cleanup_resets_running_state(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.prepare_for_query("S1")

        registry.cleanup_query("S1")

        session = registry.get("S1")
        assert session.is_query_running is False
        assert session.message_queue is None
        assert session.engine_query is None

    def test_stale_cleanup_does_not_reset_newer_invocation(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        old_token = registry.prepare_for_query("S1").cancellation
        registry.cleanup_query("S1", old_token)
        registry.prepare_for_query("S1")

        registry.cleanup_query("S1", old_token)

        session = registry.get("S1")
        assert session.is_query_running is True
        assert session.message_queue is not None

    async def test_interrupt_finishes_queue_and_cancels_token(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        session = registry.prepare_for_query("S1")
        queue, token = session.message_queue, session.cancellation
        waiter = asyncio.create_task(queue.next())
        await asyncio.sleep(0)

        await registry.interrupt_query("S1")

        assert await waiter is END_OF_STREAM
        assert token.cancelled
        assert registry.get("S1").is_query_running is False
        assert registry.get("S1").message_queue is None

    async def test_interrupt_failure_still_resets_state(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        token: CancellationToken = registry.prepare_for_query("S1").cancellation
        registry.set_engine_query("S1", _FailingQuery())  # type: ignore[arg-type]

        await registry.interrupt_query("S1")

        assert token.cancelled
        assert registry.get("S1").is_query_running is False

    async def test_interrupt_leaves_successor_invocation_running(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        old_token = registry.prepare_for_query("S1").cancellation
        registry.set_engine_query("S1", _SlowQuery(), old_token)  # type: ignore[arg-type]

        interrupt = asyncio.create_task(registry.interrupt_query("S1"))
        await asyncio.sleep(0)

        # The old invocation ends and a new one starts while interrupt() is pending
        registry.cleanup_query("S1", old_token)
        new_session = registry.prepare_for_query("S1")
        new_token, new_queue = new_session.cancellation, new_session.message_queue

        await interrupt

        session = registry.get("S1")
        assert old_token.cancelled
        assert not new_token.cancelled
        assert not new_queue.is_finished()
        assert session.is_query_running is True
        assert session.message_queue is new_queue


# =========================================================================
# Threads and history
# =========================================================================


class TestThreads:
    """Thread switching and history."""

    def test_switch_to_other_thread_clears_history(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.record_thread_id("S1", "thread_a")
        registry.add_to_history("S1", _message())

        registry.switch_thread("S1", "thread_b")

        assert registry.get_history("S1") == []
        assert registry.get("S1").current_thread_id == "thread_b"

    def test_switch_to_same_thread_is_noop(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.record_thread_id("S1", "thread_a")
        registry.add_to_history("S1", _message())

        registry.switch_thread("S1", "thread_a")

        assert len(registry.get_history("S1")) == 1

    def test_switch_does_not_interrupt(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.prepare_for_query("S1")
        registry.switch_thread("S1", "thread_b")
        assert registry.get("S1").is_query_running is True

    def test_needs_thread_switch(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        assert registry.needs_thread_switch("S1", None) is False
        assert registry.needs_thread_switch("S1", "thread_a") is True

        registry.record_thread_id("S1", "thread_a")
        assert registry.needs_thread_switch("S1", "thread_a") is False
        assert registry.needs_thread_switch("S1", None) is True

    def test_history_is_ordered_and_copied(
        self, registry: SessionRegistry, connection: FakeConnection
    ) -> None:
        registry.create("S1", connection)
        registry.add_to_history("S1", _message("user", "one"))
        registry.add_to_history("S1", _message("assistant", "two"))

        history = registry.get_history("S1")
        history.clear()

        assert [m.content for m in registry.get_history("S1")] == ["one", "two"]
        registry.clear_history("S1")
        assert registry.get_history("S1") == []


# =========================================================================
# Diagnostics
# =========================================================================


class TestSnapshots:
    def test_snapshot_reflects_state(
        self,
        registry: SessionRegistry,
        connection: FakeConnection,
        metrics: MetricsCollector,
    ) -> None:
        registry.create("S1", connection)
        session = registry.prepare_for_query("S1")
        session.message_queue.push({"type": "user"})
        registry.add_to_history("S1", _message())
        metrics.record_result("S1", cost_usd=0.5, duration_ms=10)

        snapshot = registry.snapshot("S1")

        assert snapshot.is_connected is True
        assert snapshot.is_query_running is True
        assert snapshot.message_queue_length == 1
        assert snapshot.history_length == 1
        assert snapshot.total_cost_usd == 0.5

    def test_debug_info_lists_all_sessions(self, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection("a"))
        registry.create("S2", FakeConnection("b"))
        assert {s.session_id for s in registry.get_debug_info()} == {"S1", "S2"}
        assert registry.snapshot("missing") is None

    def test_shutdown_removes_everything(self, registry: SessionRegistry) -> None:
        registry.create("S1", FakeConnection("a"))
        registry.prepare_for_query("S1")
        registry.shutdown()
        assert registry.size() == 0
