import asyncio
import time
import unittest

from chat_context_engine.errors import CompletionTimeoutError
from chat_context_engine.models import ChatMessage, Role
from chat_context_engine.streaming import CompletionStream, StreamState


class _ScriptedClient:
    def __init__(self, deltas: list[str], delay: float = 0.0, error: Exception | None = None):
        self._deltas = deltas
        self._delay = delay
        self._error = error
        self.closed = False
        self.calls: list[tuple] = []

    async def send_completion(self, messages, tools, options):
        self.calls.append((messages, tools, options))
        try:
            for delta in self._deltas:
                if self._delay:
                    await asyncio.sleep(self._delay)
                yield delta
            if self._error is not None:
                raise self._error
        finally:
            self.closed = True


class _StallingClient:
    """Sends one chunk, then goes quiet."""

    def __init__(self, first: str):
        self._first = first
        self.closed = False

    async def send_completion(self, messages, tools, options):
        try:
            yield self._first
            await asyncio.sleep(10)
            yield "late"
        finally:
            self.closed = True


class CompletionStreamTests(unittest.TestCase):
    def test_deltas_accumulate_into_assistant_message(self) -> None:
        client = _ScriptedClient(["Hel", "lo", " there"])
        seen: list[str] = []
        stream = CompletionStream(client)

        message = asyncio.run(stream.run([ChatMessage.user("hi")], on_delta=seen.append))

        self.assertEqual(Role.ASSISTANT, message.role)
        self.assertEqual("Hello there", message.text)
        self.assertEqual(["Hel", "lo", " there"], seen)
        self.assertEqual(StreamState.COMPLETED, stream.state)
        self.assertEqual(([ChatMessage.user("hi")], [], {}), client.calls[0])

    def test_cancel_keeps_partial_content(self) -> None:
        client = _ScriptedClient(["one", " two", " three"])
        stream = CompletionStream(client)

        def on_delta(delta: str) -> None:
            if delta == " two":
                stream.cancel()

        message = asyncio.run(stream.run([ChatMessage.user("count")], on_delta=on_delta))

        self.assertEqual("one two", message.text)
        self.assertEqual(StreamState.CANCELLED, stream.state)
        self.assertTrue(client.closed)

    def test_cancel_interrupts_a_transport_waiting_for_the_next_chunk(self) -> None:
        client = _StallingClient("partial")
        stream = CompletionStream(client)

        async def scenario() -> tuple[ChatMessage, float]:
            loop = asyncio.get_running_loop()
            started = time.monotonic()
            loop.call_later(0.05, stream.cancel)
            message = await stream.run([ChatMessage.user("hi")])
            return message, time.monotonic() - started

        message, elapsed = asyncio.run(scenario())

        self.assertEqual("partial", message.text)
        self.assertEqual(StreamState.CANCELLED, stream.state)
        self.assertTrue(client.closed)
        self.assertLess(elapsed, 1.0)

    def test_cancel_before_run_yields_empty_reply(self) -> None:
        client = _ScriptedClient(["ignored"])
        stream = CompletionStream(client)
        stream.cancel()

        message = asyncio.run(stream.run([ChatMessage.user("hi")]))

        self.assertEqual("", message.text)
        self.assertEqual(StreamState.CANCELLED, stream.state)

    def test_timeout_raises_completion_timeout(self) -> None:
        client = _ScriptedClient(["slow"] * 10, delay=0.05)
        stream = CompletionStream(client, timeout_seconds=0.02)

        with self.assertRaises(CompletionTimeoutError) as ctx:
            asyncio.run(stream.run([ChatMessage.user("hi")]))

        self.assertEqual(0.02, ctx.exception.timeout_seconds)
        self.assertEqual(StreamState.ERRORED, stream.state)

    def test_transport_errors_propagate_unchanged(self) -> None:
        client = _ScriptedClient(["partial"], error=ConnectionError("reset"))
        stream = CompletionStream(client)

        with self.assertRaises(ConnectionError):
            asyncio.run(stream.run([ChatMessage.user("hi")]))

        self.assertEqual(StreamState.ERRORED, stream.state)
        self.assertEqual("partial", stream.message.text)

    def test_stream_runs_once(self) -> None:
        stream = CompletionStream(_ScriptedClient(["x"]))
        asyncio.run(stream.run([ChatMessage.user("hi")]))

        with self.assertRaises(RuntimeError):
            asyncio.run(stream.run([ChatMessage.user("again")]))


if __name__ == "__main__":
    unittest.main()
