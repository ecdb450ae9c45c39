from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from chat_context_engine.errors import CompletionTimeoutError
from chat_context_engine.models import ChatMessage

DEFAULT_COMPLETION_TIMEOUT_SECONDS = 120.0


@runtime_checkable
class CompletionClient(Protocol):
    def send_completion(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> AsyncIterator[str]: ...


class StreamState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class CompletionStream:
    """Accumulates streamed text deltas into one assistant message.

    ``message`` always holds what has arrived so far. ``cancel()`` stops the
    transport immediately, even while it is waiting for the next chunk, and
    the partial content becomes final.
    """

    def __init__(self, client: CompletionClient, timeout_seconds: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS):
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._state = StreamState.IDLE
        self._cancelled = False
        self._consumer: asyncio.Task | None = None
        self.message = ChatMessage.assistant("")

    @property
    def state(self) -> StreamState:
        return self._state

    def cancel(self) -> None:
        self._cancelled = True
        if self._state != StreamState.STREAMING:
            return
        self._state = StreamState.CANCELLED
        logger.info("Completion stream cancelled")
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()

    async def run(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        options: dict[str, Any] | None = None,
        on_delta: Callable[[str], None] | None = None,
    ) -> ChatMessage:
        if self._state != StreamState.IDLE:
            raise RuntimeError(f"Stream already used (state: {self._state.value})")

        self._state = StreamState.STREAMING
        start_time = time.monotonic()
        stream = self._client.send_completion(messages, tools or [], options or {})
        self._consumer = asyncio.create_task(self._consume(stream, on_delta))
        try:
            async with asyncio.timeout(self._timeout_seconds):
                await self._consumer
        except asyncio.CancelledError:
            # Our own cancel() lands here; anything else is the caller being cancelled.
            if not self._cancelled:
                self._state = StreamState.CANCELLED
                raise
        except TimeoutError as ex:
            self._state = StreamState.ERRORED
            logger.error(f"Completion timed out after {self._timeout_seconds:g}s")
            raise CompletionTimeoutError(self._timeout_seconds) from ex
        except Exception:
            self._state = StreamState.ERRORED
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self._cancelled:
            self._state = StreamState.CANCELLED
        else:
            self._state = StreamState.COMPLETED

        elapsed = time.monotonic() - start_time
        logger.debug(f"Completion finished: state={self._state.value}, chars={len(self.message.text)}, {elapsed:.2f}s")
        return self.message

    async def _consume(self, stream: AsyncIterator[str], on_delta: Callable[[str], None] | None) -> None:
        async for delta in stream:
            if self._cancelled:
                break
            self.message = self.message.with_appended_text(delta)
            if on_delta is not None:
                on_delta(delta)
