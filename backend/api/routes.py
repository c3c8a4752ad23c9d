"""HTTP API routes for the session bridge.

This module defines the read-only diagnostic endpoints, explicit session
deletion and the health check. Conversations themselves run over the
WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, status
from fastapi.responses import Response

from models.schemas import HealthResponse, HistoryResponse, SessionSnapshot

if TYPE_CHECKING:
    from gateway import SessionGateway

logger = structlog.get_logger(__name__)

router = APIRouter()

# Session gateway dependency (set during application startup)
_session_gateway: SessionGateway | None = None


def set_session_gateway(gateway: SessionGateway) -> None:
    """Set the session gateway instance for the routes.

    This should be called during application startup to inject the gateway
    dependency.

    Args:
        gateway: The SessionGateway instance to use for all routes.
    """
    global _session_gateway
    _session_gateway = gateway
    logger.info("session_gateway_configured")


def get_session_gateway() -> SessionGateway:
    """Get the session gateway instance.

    Returns:
        The configured SessionGateway instance.

    Raises:
        RuntimeError: If the gateway has not been configured.
    """
    if _session_gateway is None:
        logger.error("session_gateway_not_configured")
        raise RuntimeError(
            "SessionGateway not configured. Call set_session_gateway() during startup."
        )
    return _session_gateway


def _not_found(session_id: str) -> HTTPException:
    logger.warning("session_not_found", session_id=session_id)
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Session {session_id} not found",
    )


@router.get(
    "/api/sessions",
    response_model=list[SessionSnapshot],
    summary="List sessions",
    description="Diagnostic snapshot of every live session.",
)
async def list_sessions() -> list[SessionSnapshot]:
    """List all sessions currently held in memory."""
    gateway = get_session_gateway()
    snapshots = gateway.registry.get_debug_info()
    logger.debug("sessions_listed", count=len(snapshots))
    return snapshots


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionSnapshot,
    summary="Get session snapshot",
    description="Running flag, queue depth, history length and thread id.",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> SessionSnapshot:
    """Get the diagnostic snapshot of one session.

    Raises:
        HTTPException: If session is not found.
    """
    snapshot = get_session_gateway().snapshot(session_id)
    if snapshot is None:
        raise _not_found(session_id)
    return snapshot


@router.get(
    "/api/sessions/{session_id}/history",
    response_model=HistoryResponse,
    summary="Get conversation history",
    description="Read-only snapshot of the current thread's messages.",
)
async def get_session_history(
    session_id: Annotated[str, Path(description="The session ID")]
) -> HistoryResponse:
    gateway = get_session_gateway()
    session = gateway.registry.get(session_id)
    if session is None:
        raise _not_found(session_id)

    return HistoryResponse(
        session_id=session_id,
        current_thread_id=session.current_thread_id,
        messages=gateway.get_history(session_id),
    )


@router.delete(
    "/api/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a session",
    description="Cancel any running invocation and drop all session state.",
)
async def delete_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> Response:
    """Explicitly destroy a session.

    Raises:
        HTTPException: If session is not found.
    """
    gateway = get_session_gateway()
    if not gateway.registry.delete(session_id):
        raise _not_found(session_id)

    logger.info("session_deleted_via_api", session_id=session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with session counts and engine name.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint.

    Reports unhealthy until the gateway has been configured during startup.

    Returns:
        HealthResponse with status, session counts and engine name.
    """
    try:
        gateway = get_session_gateway()
    except RuntimeError:
        # Gateway not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time(), engine="none")

    sessions = gateway.registry.all()
    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        active_sessions=len(sessions),
        running_queries=sum(1 for session in sessions if session.is_query_running),
        engine=getattr(gateway.orchestrator.engine, "name", "unknown"),
    )
