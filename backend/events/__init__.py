"""Outbound notice definitions for client communication.

This package defines what the session layer sends to an attached client.
Notices are delivered directly on the session's current connection; there
is no buffering, so a notice emitted while no client is attached is dropped.

Key Components:
    - NoticeType: Enum of all notice types sent to clients
    - ClientFrame: Wire frame wrapping a notice payload
    - status_payload / error_payload: Builders for common payloads

Usage:
    >>> from events import NoticeType, status_payload
    >>> await emit(NoticeType.STATUS, status_payload("Session resumed"))
"""

from events.types import (
    ClientFrame,
    ErrorPayload,
    NoticeType,
    StatusPayload,
    StreamPayload,
    error_payload,
    status_payload,
)

__all__ = [
    "ClientFrame",
    "ErrorPayload",
    "NoticeType",
    "StatusPayload",
    "StreamPayload",
    "error_payload",
    "status_payload",
]
