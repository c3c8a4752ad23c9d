"""Models module for Pydantic schemas.

This module exposes the stored-message, query-option and API models.
"""

from models.schemas import (
    HealthResponse,
    HistoryResponse,
    HookResponseCommand,
    InterruptCommand,
    MessageCommand,
    QueryOptions,
    SessionSnapshot,
    StoredMessage,
    SwitchThreadCommand,
)

__all__ = [
    "HealthResponse",
    "HistoryResponse",
    "HookResponseCommand",
    "InterruptCommand",
    "MessageCommand",
    "QueryOptions",
    "SessionSnapshot",
    "StoredMessage",
    "SwitchThreadCommand",
]
