"""Tests for engine/events.py -- raw engine event decoding."""

from engine.events import (
    AssistantMessage,
    CompactBoundary,
    JsonDelta,
    ResultMetrics,
    StreamMarker,
    SystemInit,
    SystemNotice,
    TextDelta,
    UnknownEvent,
    UserMessage,
    decode_engine_event,
    extract_thread_id,
)

# =========================================================================
# Stream events
# =========================================================================


class TestStreamEvents:
    def test_text_delta(self) -> None:
        raw = {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
        }
        event = decode_engine_event(raw)
        assert isinstance(event, TextDelta)
        assert event.text == "Hi"
        assert event.raw is raw

    def test_json_delta(self) -> None:
        raw = {
            "type": "stream_event",
            "event": {
                "type": "content_block_delta",
                "delta": {"type": "input_json_delta", "partial_json": '{"path"'},
            },
        }
        event = decode_engine_event(raw)
        assert isinstance(event, JsonDelta)
        assert event.partial_json == '{"path"'

    def test_empty_text_delta_is_marker(self) -> None:
        raw = {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": ""}},
        }
        assert isinstance(decode_engine_event(raw), StreamMarker)

    def test_block_start_marker(self) -> None:
        raw = {"type": "stream_event", "event": {"type": "content_block_start", "index": 2}}
        event = decode_engine_event(raw)
        assert isinstance(event, StreamMarker)
        assert event.event_type == "content_block_start"
        assert event.index == 2


# =========================================================================
# Messages and system events
# =========================================================================


class TestMessages:
    def test_assistant_message(self) -> None:
        content = [{"type": "text", "text": "done"}]
        event = decode_engine_event(
            {"type": "assistant", "uuid": "a1", "message": {"content": content}}
        )
        assert isinstance(event, AssistantMessage)
        assert event.content == content
        assert event.uuid == "a1"

    def test_user_message(self) -> None:
        event = decode_engine_event({"type": "user", "message": {"content": "hi"}})
        assert isinstance(event, UserMessage)
        assert event.content == "hi"
        assert event.uuid is None

    def test_system_init(self) -> None:
        event = decode_engine_event({"type": "system", "subtype": "init", "session_id": "t1"})
        assert isinstance(event, SystemInit)
        assert event.thread_id == "t1"

    def test_system_init_without_id_is_notice(self) -> None:
        event = decode_engine_event({"type": "system", "subtype": "init"})
        assert isinstance(event, SystemNotice)
        assert event.subtype == "init"

    def test_compact_boundary(self) -> None:
        event = decode_engine_event({"type": "system", "subtype": "compact_boundary"})
        assert isinstance(event, CompactBoundary)

    def test_thread_id_lookup_order(self) -> None:
        assert extract_thread_id({"data": {"session_id": "nested"}, "sessionId": "camel"}) == "nested"
        assert extract_thread_id({"sessionId": "camel"}) == "camel"
        assert extract_thread_id({"session_id": ""}) is None


# =========================================================================
# Results and unknowns
# =========================================================================


class TestResultsAndUnknown:
    def test_result_metrics(self) -> None:
        event = decode_engine_event(
            {"type": "result", "total_cost_usd": 0.25, "duration_ms": 1500.0, "is_error": True}
        )
        assert isinstance(event, ResultMetrics)
        assert event.cost_usd == 0.25
        assert event.duration_ms == 1500
        assert event.is_error is True

    def test_result_legacy_cost_field(self) -> None:
        event = decode_engine_event({"type": "result", "cost_usd": 0.1})
        assert event.cost_usd == 0.1
        assert event.duration_ms is None

    def test_unknown_kind_keeps_raw(self) -> None:
        raw = {"type": "future_thing", "x": 1}
        event = decode_engine_event(raw)
        assert isinstance(event, UnknownEvent)
        assert event.event_type == "future_thing"
        assert event.raw == raw

    def test_non_dict_is_unknown(self) -> None:
        event = decode_engine_event("garbage")
        assert isinstance(event, UnknownEvent)
        assert event.raw == {"type": None, "value": "garbage"}
