"""Agent engine contract, event decoding and the built-in echo engine.

This package exports what the orchestrator needs to drive an engine:
- EngineRequest / AgentEngine / EngineQuery: the invocation contract
- decode_engine_event and the typed event classes it produces
- load_engine: builds the configured engine at startup
"""

from engine.base import (
    AgentEngine,
    EngineQuery,
    EngineRequest,
    HookCallback,
    load_engine,
)
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
    extract_thread_id,
)

__all__ = [
    # Contract
    "AgentEngine",
    "EngineQuery",
    "EngineRequest",
    "HookCallback",
    "load_engine",
    # Events
    "AssistantMessage",
    "CompactBoundary",
    "EngineEvent",
    "JsonDelta",
    "ResultMetrics",
    "StreamMarker",
    "SystemInit",
    "SystemNotice",
    "TextDelta",
    "UnknownEvent",
    "UserMessage",
    "decode_engine_event",
    "extract_thread_id",
]
