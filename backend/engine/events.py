"""Typed engine output events.

The engine speaks in loosely-typed, string-tagged dicts. They are decoded
exactly once, at the orchestrator boundary, into the closed set of event
classes below. Anything unrecognized becomes UnknownEvent and is forwarded
verbatim, so newer engine versions keep working.

Raw shapes handled:
    {"type": "stream_event", "event": {"type": "content_block_delta",
        "delta": {"type": "text_delta", "text": ...}}}
    {"type": "stream_event", "event": {"type": "content_block_delta",
        "delta": {"type": "input_json_delta", "partial_json": ...}}}
    {"type": "stream_event", "event": {"type": "content_block_start" | ...}}
    {"type": "assistant", "message": {"content": [...]}, "uuid": ...}
    {"type": "user", "message": {"content": ...}, "uuid": ...}
    {"type": "system", "subtype": "init", "session_id": ...}
    {"type": "system", "subtype": "compact_boundary", ...}
    {"type": "result", "total_cost_usd": ..., "duration_ms": ...}
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineEvent:
    raw: dict[str, Any] = field(repr=False)


@dataclass(frozen=True)
class TextDelta(EngineEvent):
    """Incremental assistant text."""

    text: str = ""


@dataclass(frozen=True)
class JsonDelta(EngineEvent):
    """Incremental structured (tool input) JSON."""

    partial_json: str = ""


@dataclass(frozen=True)
class StreamMarker(EngineEvent):
    """Any other stream event: block start/stop, message start/stop, ..."""

    event_type: str = ""
    index: int | None = None


@dataclass(frozen=True)
class AssistantMessage(EngineEvent):
    content: Any = None
    uuid: str | None = None


@dataclass(frozen=True)
class UserMessage(EngineEvent):
    content: Any = None
    uuid: str | None = None


@dataclass(frozen=True)
class SystemInit(EngineEvent):
    """Engine initialization carrying the upstream thread id."""

    thread_id: str = ""


@dataclass(frozen=True)
class CompactBoundary(EngineEvent):
    """The engine truncated its internal history."""


@dataclass(frozen=True)
class SystemNotice(EngineEvent):
    subtype: str | None = None


@dataclass(frozen=True)
class ResultMetrics(EngineEvent):
    cost_usd: float | None = None
    duration_ms: int | None = None
    is_error: bool = False


@dataclass(frozen=True)
class UnknownEvent(EngineEvent):
    event_type: str | None = None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


def extract_thread_id(raw: dict[str, Any]) -> str | None:
    """Find the upstream thread id in an init-style payload."""
    candidates = (
        raw.get("session_id"),
        _as_dict(raw.get("data")).get("session_id"),
        raw.get("sessionId"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _decode_stream_event(raw: dict[str, Any]) -> EngineEvent:
    event = _as_dict(raw.get("event"))
    event_type = event.get("type")
    if event_type == "content_block_delta":
        delta = _as_dict(event.get("delta"))
        if delta.get("type") == "text_delta" and delta.get("text"):
            return TextDelta(raw=raw, text=str(delta["text"]))
        if delta.get("type") == "input_json_delta" and delta.get("partial_json"):
            return JsonDelta(raw=raw, partial_json=str(delta["partial_json"]))
    index = event.get("index")
    return StreamMarker(
        raw=raw,
        event_type=str(event_type or ""),
        index=index if isinstance(index, int) else None,
    )


def _decode_system(raw: dict[str, Any]) -> EngineEvent:
    subtype = raw.get("subtype")
    if subtype == "compact_boundary":
        return CompactBoundary(raw=raw)
    if subtype == "init":
        thread_id = extract_thread_id(raw)
        if thread_id:
            return SystemInit(raw=raw, thread_id=thread_id)
    return SystemNotice(raw=raw, subtype=subtype if isinstance(subtype, str) else None)


def decode_engine_event(raw: Any) -> EngineEvent:
    """Decode one raw engine event.

    Args:
        raw: The event as produced by the engine.

    Returns:
        The matching EngineEvent subclass; UnknownEvent for anything else.
    """
    if not isinstance(raw, dict):
        return UnknownEvent(raw={"type": None, "value": raw})

    kind = raw.get("type")
    if kind == "stream_event":
        return _decode_stream_event(raw)
    if kind == "assistant":
        message = _as_dict(raw.get("message"))
        return AssistantMessage(
            raw=raw, content=message.get("content"), uuid=raw.get("uuid")
        )
    if kind == "user":
        message = _as_dict(raw.get("message"))
        return UserMessage(
            raw=raw, content=message.get("content"), uuid=raw.get("uuid")
        )
    if kind == "system":
        return _decode_system(raw)
    if kind == "result":
        cost = _as_number(raw.get("total_cost_usd"))
        if cost is None:
            cost = _as_number(raw.get("cost_usd"))
        duration = _as_number(raw.get("duration_ms"))
        return ResultMetrics(
            raw=raw,
            cost_usd=cost,
            duration_ms=int(duration) if duration is not None else None,
            is_error=bool(raw.get("is_error", False)),
        )
    return UnknownEvent(raw=raw, event_type=kind if isinstance(kind, str) else None)
