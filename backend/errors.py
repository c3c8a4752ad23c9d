"""Exception types for the session bridge.

Only ConfigurationError is allowed to escape to the process. The rest are
raised where a failure happens and caught at the seam that owns recovery
(orchestrator, hook broker, session registry), so callers can tell failures
apart without scraping strings.
"""


class BridgeError(RuntimeError):
    """Base class for session bridge errors."""


class ConfigurationError(BridgeError):
    """Required configuration or credential is missing at startup."""


class TransportError(BridgeError):
    """An emit was attempted with no connection or a disconnected one."""

    def __init__(self, event: str, session_id: str | None = None) -> None:
        self.event = event
        self.session_id = session_id
        super().__init__(f"Cannot emit {event!r}: no connected client")


class EngineError(BridgeError):
    """The agent engine failed mid-invocation."""

    def __init__(self, message: str, details: object | None = None) -> None:
        self.details = details
        super().__init__(message)


class HookTimeoutError(BridgeError):
    """The client did not answer a hook request before its deadline."""

    def __init__(self, event: str, timeout: float) -> None:
        self.event = event
        self.timeout = timeout
        super().__init__(f"Hook {event} timed out after {timeout}s")


class HookDisconnectError(BridgeError):
    """The client disconnected while a hook request was pending."""

    def __init__(self, event: str) -> None:
        self.event = event
        super().__init__(f"Client disconnected while waiting for hook {event}")


class InterruptError(BridgeError):
    """The engine's interrupt operation failed."""
