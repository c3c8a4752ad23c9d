"""WebSocket handler carrying one client connection.

This module adapts a FastAPI WebSocket to the session layer's connection
contract and dispatches the client's JSON commands to the session gateway.

Outbound frames look like ``{"type": <notice>, "data": ..., "timestamp": ...}``.
Hook requests carry a ``request_id``; the client answers them with
``{"type": "hook_response", "request_id": ..., "response": {...}}``.
"""

import asyncio
import time
import uuid
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from connection import AckCallback, DisconnectListener, DisconnectSignal
from errors import TransportError
from events.types import ClientFrame, NoticeType, error_payload
from models.schemas import (
    HookResponseCommand,
    InterruptCommand,
    MessageCommand,
    QueryOptions,
    SwitchThreadCommand,
)

if TYPE_CHECKING:
    from gateway import SessionGateway

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_session_gateway: "SessionGateway | None" = None


def set_session_gateway(gateway: "SessionGateway") -> None:
    """Set the session gateway used by WebSocket command handlers."""
    global _session_gateway
    _session_gateway = gateway
    logger.info("websocket_session_gateway_configured")


def get_session_gateway() -> "SessionGateway":
    """Return configured session gateway for WebSocket command handlers."""
    if _session_gateway is None:
        raise RuntimeError(
            "SessionGateway not configured for WebSocket handlers. "
            "Call set_session_gateway() during startup."
        )
    return _session_gateway


class WebSocketConnection:
    """Connection contract implemented on top of a FastAPI WebSocket.

    Attributes:
        websocket: The accepted WebSocket.
        connection_id: Unique id of this connection (for logs and diagnostics).
    """

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or f"ws_{uuid.uuid4().hex[:12]}"
        self._disconnect = DisconnectSignal(self.connection_id)
        self._pending_acks: dict[str, AckCallback] = {}
        self._send_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return not self._disconnect.fired

    async def emit(
        self,
        event: str,
        data: Any = None,
        ack: AckCallback | None = None,
    ) -> str | None:
        """Send one notice frame.

        Args:
            event: Notice type.
            data: Notice payload.
            ack: Callback invoked with the client's answer, if one is expected.

        Returns:
            The request id registered for ``ack``, or None without one.

        Raises:
            TransportError: If the connection is gone or the send fails.
        """
        if not self.connected:
            raise TransportError(event)

        request_id: str | None = None
        if ack is not None:
            request_id = uuid.uuid4().hex
            self._pending_acks[request_id] = ack

        frame = ClientFrame(type=NoticeType(event), data=data, request_id=request_id)
        try:
            async with self._send_lock:
                await self.websocket.send_json(frame.to_wire())
        except Exception as e:
            if request_id is not None:
                self._pending_acks.pop(request_id, None)
            raise TransportError(event) from e

        logger.debug(
            "notice_sent",
            connection_id=self.connection_id,
            notice=str(event),
            request_id=request_id,
            direction="out",
        )
        return request_id

    def resolve_ack(self, request_id: str, response: Any) -> bool:
        """Deliver the client's answer to a pending request.

        Returns:
            True if a request with this id was pending.
        """
        ack = self._pending_acks.pop(request_id, None)
        if ack is None:
            logger.warning(
                "hook_response_unknown_request",
                connection_id=self.connection_id,
                request_id=request_id,
            )
            return False
        ack(response)
        return True

    def discard_ack(self, request_id: str) -> None:
        """Forget a pending request that was settled without an answer."""
        self._pending_acks.pop(request_id, None)

    def pending_ack_count(self) -> int:
        return len(self._pending_acks)

    def add_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect.add(listener)

    def remove_disconnect_listener(self, listener: DisconnectListener) -> None:
        self._disconnect.remove(listener)

    def disconnect_listener_count(self) -> int:
        return self._disconnect.count()

    def mark_disconnected(self) -> None:
        """Fire the one-shot disconnect signal and drop pending acks."""
        self._pending_acks.clear()
        self._disconnect.fire()


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
    """WebSocket endpoint for one client of a session.

    Connecting attaches the client to the session (create or resume).
    Closing the socket starts the session's disconnect grace period.

    Args:
        websocket: The WebSocket connection.
        session_id: The session the client claims.
    """
    gateway = get_session_gateway()
    await websocket.accept()

    connection = WebSocketConnection(websocket)
    logger.info(
        "websocket_connected",
        session_id=session_id,
        connection_id=connection.connection_id,
    )

    try:
        await gateway.attach(session_id, connection)

        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                logger.warning("invalid_ws_json", session_id=session_id)
                continue

            if not isinstance(data, dict):
                logger.warning("invalid_ws_message", session_id=session_id)
                continue

            await handle_command(gateway, connection, session_id, data)

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    except Exception as e:
        logger.error("websocket_error", session_id=session_id, error=str(e))
    finally:
        connection.mark_disconnected()
        gateway.detach(session_id, connection)
        logger.info(
            "websocket_cleanup_complete",
            session_id=session_id,
            connection_id=connection.connection_id,
        )


async def handle_command(
    gateway: "SessionGateway",
    connection: WebSocketConnection,
    session_id: str,
    data: dict[str, Any],
) -> None:
    """Dispatch one inbound command.

    Invalid payloads are answered with an error notice; the connection
    stays open.
    """
    command_type = data.get("type")
    logger.info(
        "command_received",
        session_id=session_id,
        command_type=command_type,
        direction="in",
    )

    try:
        if command_type == "start":
            options = QueryOptions.model_validate(data.get("options") or {})
            await gateway.start(session_id, options)
        elif command_type == "message":
            command = MessageCommand.model_validate(data)
            await gateway.submit(session_id, command.prompt, command.options)
        elif command_type == "interrupt":
            interrupt = InterruptCommand.model_validate(data)
            await gateway.interrupt(session_id, interrupt.thread_id, interrupt.reason)
        elif command_type == "switch_thread":
            switch = SwitchThreadCommand.model_validate(data)
            await gateway.request_thread_switch(session_id, switch.thread_id)
        elif command_type == "hook_response":
            answer = HookResponseCommand.model_validate(data)
            connection.resolve_ack(answer.request_id, answer.response)
        elif command_type == "get_history":
            await gateway.send_history(session_id)
        elif command_type == "clear":
            await gateway.clear(session_id)
        elif command_type == "get_diagnostics":
            await gateway.diagnostics(session_id)
        elif command_type == "ping":
            await connection.emit(
                NoticeType.PONG,
                {"timestamp": data.get("timestamp"), "server_time": time.time()},
            )
        else:
            logger.warning(
                "unknown_command",
                session_id=session_id,
                command_type=command_type,
            )
    except ValidationError as e:
        logger.warning(
            "invalid_command_payload",
            session_id=session_id,
            command_type=command_type,
            error_count=e.error_count(),
        )
        await connection.emit(
            NoticeType.ERROR,
            error_payload(
                f"Invalid {command_type} command",
                details=e.errors(include_url=False, include_context=False),
            ),
        )
