"""Built-in echo engine for local development and tests.

The echo engine implements the engine contract without calling any model:
for every user message pulled from the queue it streams the reply
"Echo: <prompt>" word by word, then emits the complete assistant message
and a result event. It stops when the queue ends, the cancellation token is
signalled, or interrupt() is called.
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

import structlog

from engine.base import EngineRequest
from message_queue import END_OF_STREAM

logger = structlog.get_logger(__name__)


class EchoQuery:
    """One running echo invocation."""

    def __init__(self, request: EngineRequest) -> None:
        self.request = request
        self.thread_id: str = request.options.get("resume") or f"echo_{uuid.uuid4().hex[:12]}"
        self._stopped = asyncio.Event()
        self.interrupted = False

    def __aiter__(self) -> AsyncIterator[dict[str, Any]]:
        return self._run()

    async def interrupt(self) -> None:
        self.interrupted = True
        self._stopped.set()
        logger.info("echo_engine_interrupted", session_id=self.request.session_id)

    async def _next_message(self) -> Any:
        """Pull the next user message unless the invocation is told to stop."""
        pull = asyncio.ensure_future(self.request.messages.next())
        stop = asyncio.ensure_future(self._stopped.wait())
        cancelled = asyncio.ensure_future(self.request.cancellation.wait())
        try:
            done, _ = await asyncio.wait(
                {pull, stop, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (pull, stop, cancelled):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        if pull in done:
            return pull.result()
        return END_OF_STREAM

    async def _run(self) -> AsyncIterator[dict[str, Any]]:
        session_id = self.request.session_id
        model = self.request.options.get("model", "echo")

        yield {
            "type": "system",
            "subtype": "init",
            "session_id": self.thread_id,
            "model": model,
            "cwd": self.request.options.get("cwd"),
        }

        turns = 0
        while not self._stopped.is_set() and not self.request.cancellation.cancelled:
            item = await self._next_message()
            if item is END_OF_STREAM:
                break

            started = time.monotonic()
            prompt = _prompt_text(item)
            reply = f"Echo: {prompt}"
            turns += 1

            for index, word in enumerate(reply.split(" ")):
                chunk = word if index == 0 else f" {word}"
                yield {
                    "type": "stream_event",
                    "session_id": self.thread_id,
                    "event": {
                        "type": "content_block_delta",
                        "index": 0,
                        "delta": {"type": "text_delta", "text": chunk},
                    },
                }

            yield {
                "type": "assistant",
                "uuid": str(uuid.uuid4()),
                "session_id": self.thread_id,
                "message": {
                    "role": "assistant",
                    "model": model,
                    "content": [{"type": "text", "text": reply}],
                },
            }
            yield {
                "type": "result",
                "subtype": "success",
                "session_id": self.thread_id,
                "is_error": False,
                "num_turns": turns,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "total_cost_usd": 0.0,
            }

        logger.info(
            "echo_engine_finished",
            session_id=session_id,
            turns=turns,
            interrupted=self.interrupted,
        )


def _prompt_text(item: Any) -> str:
    if isinstance(item, dict):
        message = item.get("message")
        if isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                return " ".join(
                    block.get("text", "")
                    for block in content
                    if isinstance(block, dict)
                )
    return str(item)


class EchoEngine:
    """Engine factory producing EchoQuery invocations."""

    name = "echo"

    def __init__(self) -> None:
        self.invocations = 0

    def query(self, request: EngineRequest) -> EchoQuery:
        self.invocations += 1
        return EchoQuery(request)
