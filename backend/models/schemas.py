"""Pydantic schemas for stored messages, query options and API responses.

This module defines the data models used by the session registry, the HTTP
API and the WebSocket handlers. All models use Pydantic v2.
"""

import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant", "system"]


class StoredMessage(BaseModel):
    """One entry of a session's conversation history.

    Stored messages are immutable once appended.
    """

    model_config = ConfigDict(frozen=True)

    role: MessageRole = Field(description="Who produced the message")
    content: str | list[dict[str, Any]] | Any = Field(
        description="Plain text or structured content blocks",
    )
    uuid: str | None = Field(
        default=None,
        description="Correlation id assigned by the client or the engine",
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the message was stored",
    )


class QueryOptions(BaseModel):
    """Options for one engine invocation.

    Unknown keys are kept and passed through to the engine untouched.
    """

    model_config = ConfigDict(extra="allow")

    model: str | None = Field(default=None, description="Model override")
    resume: str | None = Field(
        default=None,
        description="Upstream thread id to resume; None starts a new thread",
    )
    system_prompt: str | None = Field(default=None)
    max_turns: int | None = Field(default=None, ge=1)
    allowed_tools: list[str] | None = Field(default=None)
    disallowed_tools: list[str] | None = Field(default=None)
    permission_mode: str | None = Field(default=None)
    cwd: str | None = Field(default=None)
    include_partial_messages: bool = Field(
        default=True,
        description="Ask the engine for streaming deltas",
    )
    env: dict[str, str] | None = Field(default=None)


# -----------------------------------------------------------------------------
# Inbound WebSocket commands
# -----------------------------------------------------------------------------


class MessageCommand(BaseModel):
    """Client submits a prompt, optionally with query options."""

    prompt: str = Field(min_length=1, description="User prompt text")
    options: QueryOptions = Field(default_factory=QueryOptions)


class InterruptCommand(BaseModel):
    """Client asks to stop the running invocation."""

    thread_id: str | None = Field(default=None, alias="threadId")
    reason: str = Field(default="user_interrupt")

    model_config = ConfigDict(populate_by_name=True)


class SwitchThreadCommand(BaseModel):
    """Client asks to move the session to another thread (None = new thread)."""

    thread_id: str | None = Field(default=None, alias="threadId")

    model_config = ConfigDict(populate_by_name=True)


class HookResponseCommand(BaseModel):
    """Client answers a pending hook request."""

    request_id: str = Field(description="Id sent with the hook request")
    response: dict[str, Any] | None = Field(default=None)


# -----------------------------------------------------------------------------
# HTTP responses
# -----------------------------------------------------------------------------


class SessionSnapshot(BaseModel):
    """Diagnostic snapshot of one session."""

    session_id: str = Field(description="Session identifier")
    is_connected: bool = Field(description="Whether a client is attached")
    is_query_running: bool = Field(description="Whether the engine is running")
    has_message_queue: bool = Field(default=False)
    message_queue_finished: bool = Field(default=False)
    message_queue_length: int = Field(default=0, ge=0)
    history_length: int = Field(ge=0)
    current_thread_id: str | None = Field(default=None)
    cleanup_pending: bool = Field(default=False)
    invocations: int = Field(default=0, ge=0)
    total_cost_usd: float = Field(default=0.0, ge=0.0)
    total_duration_ms: int = Field(default=0, ge=0)


class HistoryResponse(BaseModel):
    """Read-only snapshot of a session's conversation history."""

    session_id: str
    current_thread_id: str | None = None
    messages: list[StoredMessage] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Response for the health check endpoint."""

    status: Literal["healthy", "unhealthy"] = Field(description="Overall health")
    timestamp: float = Field(description="Unix timestamp of the check")
    active_sessions: int = Field(default=0, ge=0)
    running_queries: int = Field(default=0, ge=0)
    engine: str = Field(default="echo", description="Engine backing sessions")
