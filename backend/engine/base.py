"""Contract between the session layer and the conversational agent engine.

The engine is an opaque collaborator. For one invocation it receives a
pull-based message source, its options, a cancellation token and a map of
named hook callbacks, and produces an ordered stream of raw event dicts that
ends in completion or a raised failure. While running it can be asked to
stop through a separate interrupt() call.
"""

import importlib
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from cancellation import CancellationToken
from config import Settings
from errors import ConfigurationError
from message_queue import MessageQueue

logger = structlog.get_logger(__name__)

HookCallback = Callable[[dict[str, Any] | None], Awaitable[dict[str, Any]]]
StderrCallback = Callable[[str], Awaitable[None]]


@dataclass
class EngineRequest:
    """Everything the engine needs for one invocation.

    Attributes:
        session_id: Session the invocation belongs to.
        messages: Queue the engine pulls user input from.
        options: Resolved query options (model, resume, tools, ...).
        cancellation: Token signalled when the invocation must stop.
        hooks: Hook callbacks keyed by event name.
        on_stderr: Optional sink for engine diagnostic output.
    """

    session_id: str
    messages: MessageQueue[dict[str, Any]]
    options: dict[str, Any]
    cancellation: CancellationToken
    hooks: dict[str, HookCallback] = field(default_factory=dict)
    on_stderr: StderrCallback | None = None


@runtime_checkable
class EngineQuery(Protocol):
    """A running invocation: an async stream of raw events plus interrupt()."""

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]: ...

    async def interrupt(self) -> None: ...


@runtime_checkable
class AgentEngine(Protocol):
    """Factory for engine invocations."""

    name: str

    def query(self, request: EngineRequest) -> EngineQuery: ...


def load_engine(settings: Settings) -> AgentEngine:
    """Build the engine selected by configuration.

    Args:
        settings: Application settings.

    Returns:
        The echo engine when ``use_mock_engine`` is set, otherwise an
        instance of ``engine_class`` constructed with ``api_key``.

    Raises:
        ConfigurationError: If the configured engine cannot be imported.
    """
    if settings.use_mock_engine:
        from engine.echo import EchoEngine

        return EchoEngine()

    module_name, _, class_name = settings.engine_class.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(
            f"ENGINE_CLASS must look like 'module:Class', got {settings.engine_class!r}"
        )
    try:
        module = importlib.import_module(module_name)
        engine_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load engine {settings.engine_class!r}: {e}"
        ) from e

    logger.info("engine_loaded", engine_class=settings.engine_class)
    return engine_cls(api_key=settings.engine_api_key)
