"""Outbound notice types sent from the session layer to the client.

Every notice is emitted on the session's currently attached connection as a
frame of the form ``{"type": <NoticeType>, "data": <payload>}``. Notices are
never queued for later delivery: with no connected client they are dropped.
"""

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class NoticeType(StrEnum):
    """All notice types the server sends to a client.

    Notices are categorized by:
    - Session lifecycle: status, cleared, interrupt completion, diagnostics
    - Conversation: complete messages, history snapshots
    - Streaming: text/structured chunks and raw stream events
    - Hooks: approval requests, notifications and image artifacts
    - Engine output: result metrics, system events, compaction markers,
      stderr and forward-compatible raw events
    """

    # Session lifecycle
    STATUS = "status"
    CLEARED = "cleared"
    INTERRUPT_COMPLETE = "interrupt_complete"
    DIAGNOSTICS = "diagnostics"
    ERROR = "error"
    PONG = "pong"

    # Conversation
    MESSAGE = "message"
    HISTORY = "history"

    # Streaming
    STREAM = "stream"
    STREAM_EVENT = "stream_event"

    # Hooks
    HOOK_REQUEST = "hook_request"
    HOOK_NOTIFICATION = "hook_notification"
    IMAGE_CREATED = "image_created"

    # Engine output
    RESULT = "result"
    SYSTEM = "system"
    COMPACT_BOUNDARY = "compact_boundary"
    STDERR = "stderr"
    SDK_EVENT = "sdk_event"


class ClientFrame(BaseModel):
    """A notice as written to the wire.

    Payload schemas by notice type:

    STATUS / CLEARED:
        - type: str - "info", "warning" or "error"
        - message: str - Human-readable status text

    STREAM:
        - type: str - "text" or "json"
        - content: str - The chunk

    MESSAGE:
        - role: str - "user", "assistant" or "system"
        - content: str | list - Text or content blocks
        - uuid: Optional[str] - Correlation id
        - subtype / session_id: Present on system init notices

    HOOK_REQUEST / HOOK_NOTIFICATION:
        - event: str - Hook event name
        - data: dict - Payload the engine passed to the hook

    ERROR:
        - message: str - What went wrong
        - details: Any - Best-effort details

    INTERRUPT_COMPLETE:
        - threadId: str - Thread the client asked to interrupt
        - success: bool
        - sessionId: Optional[str]

    RESULT / SYSTEM / COMPACT_BOUNDARY / STREAM_EVENT / SDK_EVENT:
        - The raw engine event, unchanged
    """

    type: NoticeType
    data: Any = None
    request_id: str | None = None
    timestamp: float = Field(default_factory=time.time)

    def to_wire(self) -> dict[str, Any]:
        frame = self.model_dump(mode="json", exclude_none=True)
        if self.data is None:
            frame["data"] = None
        return frame


class StatusPayload(BaseModel):
    """Payload for STATUS and CLEARED notices."""

    type: Literal["info", "warning", "error"] = "info"
    message: str


class ErrorPayload(BaseModel):
    """Payload for ERROR notices."""

    message: str
    details: Any = None


class StreamPayload(BaseModel):
    """Payload for STREAM notices."""

    type: Literal["text", "json"]
    content: str


def status_payload(message: str, level: Literal["info", "warning", "error"] = "info") -> dict[str, Any]:
    return StatusPayload(type=level, message=message).model_dump()


def error_payload(message: str, details: Any = None) -> dict[str, Any]:
    return ErrorPayload(message=message, details=details).model_dump()
