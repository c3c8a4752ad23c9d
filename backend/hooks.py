"""Hook broker resolving engine lifecycle checkpoints against the client.

The engine calls a named hook (PreToolUse, PostToolUse, Stop, ...) with a
payload and awaits a response dict. The broker picks one of two strategies
by event name:

- Notify-only (configurable, PostToolUse by default): emit a
  ``hook_notification`` and return ``{"action": "continue"}`` at once.
- Request/response (everything else): emit a ``hook_request`` with a
  response channel and wait for the first of three outcomes: the client
  answers, the connection disconnects, or the per-call timeout elapses.
  Signalling the invocation's cancellation token also ends the wait.

Whichever outcome fires first settles the call; the timer, the disconnect
listener, the cancellation callback and the pending response channel are
always removed afterwards.

The first hook payload carrying the engine's upstream session id is also
forwarded to the client as a system/init message and reported to the
session registry, once per invocation.

Failures while emitting or decoding a response are logged and turned into
the fallback response. Nothing is raised back into the engine.
"""

import asyncio
import re
import time
from collections.abc import Callable, Iterable
from typing import Any, Literal

import structlog

from cancellation import CancellationToken
from connection import Connection
from engine.base import HookCallback
from errors import HookDisconnectError, HookTimeoutError
from events.types import NoticeType

logger = structlog.get_logger(__name__)

# Default timeout for hook responses from the client (5 minutes)
DEFAULT_HOOK_TIMEOUT_SECONDS = 300.0

DEFAULT_NOTIFY_ONLY_HOOKS = frozenset({"PostToolUse"})

HOOK_EVENTS = (
    "PreToolUse",
    "PostToolUse",
    "Notification",
    "UserPromptSubmit",
    "SessionStart",
    "SessionEnd",
    "Stop",
    "SubagentStop",
    "PreCompact",
)

CONTINUE_RESPONSE: dict[str, Any] = {"action": "continue"}

FallbackPolicy = Literal["open", "closed"]

# -----------------------------------------------------------------------------
# Image artifact detection
# -----------------------------------------------------------------------------

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg"})
ARTIFACT_PATHS = ("/workspace", "/tmp")

_IMAGE_PATH_RE = re.compile(
    r"/(?:workspace|tmp)/[^\s'\"<>|]+\.(?:png|jpg|jpeg|gif|webp|svg)",
    re.IGNORECASE,
)
_IMAGE_COMMAND_MARKERS = (
    "savefig", "imsave", "save(", "convert ", "matplotlib", "pillow",
    "PIL", ".png", ".jpg", "> /", "tee ",
)
_ERROR_MARKERS = ("error", "not found", "no such file", "failed")


def _is_image_file(path: str) -> bool:
    dot = path.rfind(".")
    return dot != -1 and path[dot:].lower() in IMAGE_EXTENSIONS


def _is_artifact_path(path: str) -> bool:
    return path.startswith(ARTIFACT_PATHS)


def extract_image_paths(payload: Any) -> list[str]:
    """Find image files a tool call actually created.

    Write calls count when they target an image under an artifact path. Bash
    calls count only when the command looks like it writes images and the
    output names such a file without reporting an error.

    Args:
        payload: PostToolUse hook payload.

    Returns:
        Deduplicated image paths in discovery order.
    """
    if not isinstance(payload, dict):
        return []

    tool_name = payload.get("tool_name")
    tool_input = payload.get("tool_input")
    if not isinstance(tool_input, dict):
        tool_input = {}
    tool_result = payload.get("tool_result") or payload.get("tool_response")

    paths: list[str] = []

    if tool_name == "Write":
        file_path = tool_input.get("file_path")
        if isinstance(file_path, str) and _is_image_file(file_path) and _is_artifact_path(file_path):
            paths.append(file_path)

    if tool_name == "Bash" and isinstance(tool_result, str) and tool_result:
        command = tool_input.get("command") or ""
        if any(marker in command for marker in _IMAGE_COMMAND_MARKERS):
            lowered = tool_result.lower()
            if not any(marker in lowered for marker in _ERROR_MARKERS):
                paths.extend(
                    match for match in _IMAGE_PATH_RE.findall(tool_result)
                    if _is_artifact_path(match)
                )

    return list(dict.fromkeys(paths))


# -----------------------------------------------------------------------------
# Hook broker
# -----------------------------------------------------------------------------


class HookBroker:
    """Creates and serves the hook callbacks for one engine invocation.

    Attributes:
        session_id: Session the invocation belongs to.
        timeout: Default seconds to wait for a client response.
        notify_only: Event names handled with the notify-only strategy.
        fallback_policy: "open" answers {} when no client response arrives;
            "closed" answers a deny action instead.
    """

    def __init__(
        self,
        session_id: str,
        *,
        get_connection: Callable[[], Connection | None],
        cancellation: CancellationToken,
        on_thread_id: Callable[[str], None] | None = None,
        notify_only: Iterable[str] = DEFAULT_NOTIFY_ONLY_HOOKS,
        timeout: float = DEFAULT_HOOK_TIMEOUT_SECONDS,
        fallback_policy: FallbackPolicy = "open",
    ) -> None:
        self.session_id = session_id
        self.get_connection = get_connection
        self.cancellation = cancellation
        self.on_thread_id = on_thread_id
        self.notify_only = frozenset(notify_only)
        self.timeout = timeout
        self.fallback_policy = fallback_policy
        self._thread_id_sent = False

    def reset_thread_id_capture(self) -> None:
        """Allow the upstream session id to be captured again."""
        self._thread_id_sent = False

    def create_hook(self, event_name: str, timeout: float | None = None) -> HookCallback:
        """Return the async callback the engine invokes for ``event_name``."""
        effective_timeout = self.timeout if timeout is None else timeout

        async def hook(payload: dict[str, Any] | None) -> dict[str, Any]:
            return await self.handle(event_name, payload, effective_timeout)

        hook.__name__ = f"hook_{event_name}"
        return hook

    def create_all_hooks(self) -> dict[str, HookCallback]:
        return {name: self.create_hook(name) for name in HOOK_EVENTS}

    async def handle(
        self,
        event_name: str,
        payload: dict[str, Any] | None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Resolve one hook call.

        Args:
            event_name: The hook event name.
            payload: Data the engine passed to the hook.
            timeout: Seconds to wait for a client response.

        Returns:
            The client's response, CONTINUE_RESPONSE for notify-only hooks,
            or the fallback response when no answer can be obtained.
        """
        connection = self.get_connection()
        is_connected = connection is not None and connection.connected

        await self._capture_thread_id(payload, event_name, connection if is_connected else None)

        if self.cancellation.cancelled:
            logger.info(
                "hook_skipped_cancelled", session_id=self.session_id, hook_event=event_name
            )
            return {}

        if not is_connected:
            logger.warning(
                "hook_skipped_disconnected", session_id=self.session_id, hook_event=event_name
            )
            if event_name in self.notify_only:
                return {}
            return self._fallback("no connected client")

        if event_name in self.notify_only:
            return await self._notify(event_name, payload, connection)

        return await self._request_response(
            event_name,
            payload,
            connection,
            self.timeout if timeout is None else timeout,
        )

    async def _capture_thread_id(
        self,
        payload: dict[str, Any] | None,
        event_name: str,
        connection: Connection | None,
    ) -> None:
        if self._thread_id_sent or not isinstance(payload, dict):
            return
        thread_id = payload.get("session_id")
        if not isinstance(thread_id, str) or not thread_id:
            return

        self._thread_id_sent = True
        logger.info(
            "hook_thread_id_captured",
            session_id=self.session_id,
            hook_event=event_name,
            thread_id=thread_id,
        )

        if self.on_thread_id is not None:
            self.on_thread_id(thread_id)

        if connection is None:
            return
        try:
            await connection.emit(
                NoticeType.MESSAGE,
                {"role": "system", "subtype": "init", "session_id": thread_id},
            )
        except Exception as e:
            logger.error("hook_thread_id_emit_failed", session_id=self.session_id, error=str(e))

    async def _notify(
        self,
        event_name: str,
        payload: dict[str, Any] | None,
        connection: Connection,
    ) -> dict[str, Any]:
        logger.debug(
            "hook_notification",
            session_id=self.session_id,
            hook_event=event_name,
            direction="out",
        )
        try:
            await connection.emit(
                NoticeType.HOOK_NOTIFICATION, {"event": event_name, "data": payload}
            )
            if event_name == "PostToolUse":
                for path in extract_image_paths(payload):
                    await connection.emit(
                        NoticeType.IMAGE_CREATED,
                        {"sandboxPath": path, "sessionId": self.session_id},
                    )
        except Exception as e:
            logger.error(
                "hook_notification_failed",
                session_id=self.session_id,
                hook_event=event_name,
                error=str(e),
            )
        return dict(CONTINUE_RESPONSE)

    async def _request_response(
        self,
        event_name: str,
        payload: dict[str, Any] | None,
        connection: Connection,
        timeout: float,
    ) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[tuple[str, Any]] = loop.create_future()
        started = time.monotonic()

        def settle(reason: str, value: Any = None) -> None:
            if not outcome.done():
                outcome.set_result((reason, value))

        def on_response(response: Any) -> None:
            settle("response", response)

        def on_disconnect() -> None:
            settle("disconnect")

        def on_cancel() -> None:
            settle("cancelled")

        timer = loop.call_later(timeout, settle, "timeout")
        connection.add_disconnect_listener(on_disconnect)
        self.cancellation.add_callback(on_cancel)

        logger.info(
            "hook_request",
            session_id=self.session_id,
            hook_event=event_name,
            timeout_seconds=timeout,
            direction="out",
        )
        request_id: str | None = None
        try:
            request_id = await connection.emit(
                NoticeType.HOOK_REQUEST,
                {"event": event_name, "data": payload},
                ack=on_response,
            )
            reason, value = await outcome
            elapsed_ms = int((time.monotonic() - started) * 1000)

            if reason == "response":
                response = _decode_response(value)
                logger.info(
                    "hook_response",
                    session_id=self.session_id,
                    hook_event=event_name,
                    elapsed_ms=elapsed_ms,
                    direction="in",
                )
                return response
            if reason == "timeout":
                error: Exception = HookTimeoutError(event_name, timeout)
            elif reason == "disconnect":
                error = HookDisconnectError(event_name)
            else:
                logger.info(
                    "hook_cancelled", session_id=self.session_id, hook_event=event_name
                )
                return {}

            logger.warning(
                "hook_unanswered",
                session_id=self.session_id,
                hook_event=event_name,
                reason=reason,
                elapsed_ms=elapsed_ms,
                error=str(error),
            )
            return self._fallback(str(error))
        except Exception as e:
            logger.error(
                "hook_request_failed",
                session_id=self.session_id,
                hook_event=event_name,
                error=str(e),
            )
            return {}
        finally:
            timer.cancel()
            connection.remove_disconnect_listener(on_disconnect)
            self.cancellation.remove_callback(on_cancel)
            if request_id is not None:
                connection.discard_ack(request_id)

    def _fallback(self, reason: str) -> dict[str, Any]:
        if self.fallback_policy == "closed":
            return {"action": "deny", "reason": reason}
        return {}


def _decode_response(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise TypeError(f"Hook response must be an object, got {type(value).__name__}")
    return dict(value)
