import asyncio
import unittest

from chat_context_engine.errors import SummarizationFailure
from chat_context_engine.models import ChatMessage, Role, ToolCall
from chat_context_engine.summarization import (
    ExtractiveSummarizer,
    ProviderSummarizer,
    SummarizationTrigger,
    build_context_window,
    format_for_summarization,
    sanitize_messages,
)
from tests.base import make_estimator, words


def _conversation(count: int) -> list[ChatMessage]:
    messages = []
    for i in range(count):
        if i % 2 == 0:
            messages.append(ChatMessage.user(f"question {i}"))
        else:
            messages.append(ChatMessage.assistant(f"answer {i}"))
    return messages


class _RecordingSummarizer:
    def __init__(self, result: str = "digest", error: Exception | None = None):
        self.calls: list[tuple[list[ChatMessage], str | None]] = []
        self._result = result
        self._error = error
        self.release = asyncio.Event()
        self.block = False

    async def summarize(self, messages, previous_summary):
        self.calls.append((list(messages), previous_summary))
        if self.block:
            await self.release.wait()
        if self._error is not None:
            raise self._error
        return self._result


class _FakeProvider:
    def __init__(self, text: str = "model summary", error: Exception | None = None):
        self.requests: list[dict] = []
        self._text = text
        self._error = error

    async def create_message(self, model, max_tokens, temperature, messages):
        self.requests.append({"model": model, "max_tokens": max_tokens, "messages": messages})
        if self._error is not None:
            raise self._error
        return self._text


class ShouldSummarizeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.trigger = SummarizationTrigger(_RecordingSummarizer(), make_estimator(), threshold_tokens=0)

    def test_fires_at_min_messages_and_every_interval(self) -> None:
        self.assertFalse(self.trigger.should_summarize(_conversation(10)))
        self.assertFalse(self.trigger.should_summarize(_conversation(19)))
        self.assertTrue(self.trigger.should_summarize(_conversation(20)))
        self.assertFalse(self.trigger.should_summarize(_conversation(25)))
        self.assertTrue(self.trigger.should_summarize(_conversation(30)))

    def test_token_threshold_fires_early(self) -> None:
        trigger = SummarizationTrigger(_RecordingSummarizer(), make_estimator(), threshold_tokens=1000)
        messages = [ChatMessage.user(words(600)) for _ in range(6)]
        self.assertTrue(trigger.should_summarize(messages))

    def test_never_fires_when_read_only(self) -> None:
        self.trigger.read_only = True
        self.assertFalse(self.trigger.should_summarize(_conversation(20)))


class SummarizeTests(unittest.TestCase):
    def test_keeps_recent_messages_out_of_the_digest(self) -> None:
        summarizer = _RecordingSummarizer()
        trigger = SummarizationTrigger(summarizer, make_estimator(), keep_recent=5)
        messages = _conversation(20)

        summary = asyncio.run(trigger.summarize(messages))

        self.assertEqual("digest", summary)
        self.assertEqual("digest", trigger.current_summary)
        digested, previous = summarizer.calls[0]
        self.assertEqual(messages[:15], digested)
        self.assertIsNone(previous)

    def test_folds_previous_summary_and_keeps_more_recent(self) -> None:
        summarizer = _RecordingSummarizer(result="second")
        trigger = SummarizationTrigger(summarizer, make_estimator(), keep_recent=5)
        trigger.restore("first")
        messages = _conversation(30)

        asyncio.run(trigger.summarize(messages))

        digested, previous = summarizer.calls[0]
        self.assertEqual(messages[:20], digested)
        self.assertEqual("first", previous)
        self.assertEqual("second", trigger.current_summary)

    def test_failure_leaves_previous_summary(self) -> None:
        trigger = SummarizationTrigger(
            _RecordingSummarizer(error=SummarizationFailure("down")),
            make_estimator(),
        )
        trigger.restore("kept")

        result = asyncio.run(trigger.summarize(_conversation(20)))

        self.assertIsNone(result)
        self.assertEqual("kept", trigger.current_summary)
        self.assertFalse(trigger.is_summarizing)

    def test_on_summary_callback_receives_digest(self) -> None:
        received: list[str] = []
        trigger = SummarizationTrigger(_RecordingSummarizer(), make_estimator(), on_summary=received.append)

        asyncio.run(trigger.summarize(_conversation(20)))

        self.assertEqual(["digest"], received)

    def test_reset_clears_summary(self) -> None:
        trigger = SummarizationTrigger(_RecordingSummarizer(), make_estimator())
        trigger.restore("old")
        trigger.reset()
        self.assertIsNone(trigger.current_summary)

    def test_maybe_summarize_runs_in_background(self) -> None:
        async def scenario() -> None:
            summarizer = _RecordingSummarizer()
            summarizer.block = True
            trigger = SummarizationTrigger(summarizer, make_estimator(), threshold_tokens=0)

            self.assertIsNone(trigger.maybe_summarize(_conversation(12)))
            task = trigger.maybe_summarize(_conversation(20))
            self.assertIsNotNone(task)
            self.assertTrue(trigger.is_summarizing)
            # A second qualifying turn while a summary is running does not start another.
            self.assertIsNone(trigger.maybe_summarize(_conversation(30)))

            summarizer.release.set()
            await trigger.wait()
            self.assertFalse(trigger.is_summarizing)
            self.assertEqual("digest", trigger.current_summary)
            self.assertEqual(1, len(summarizer.calls))

        asyncio.run(scenario())


class SummarizerTests(unittest.TestCase):
    def test_extractive_summary_lists_user_topics(self) -> None:
        summary = asyncio.run(ExtractiveSummarizer().summarize(_conversation(4), "earlier"))
        self.assertTrue(summary.startswith("earlier\n\n"))
        self.assertIn("Conversation covered 4 messages about:", summary)
        self.assertIn("1. question 0...", summary)
        self.assertIn("2. question 2...", summary)

    def test_provider_summarizer_sends_previous_summary_and_history(self) -> None:
        provider = _FakeProvider()
        summarizer = ProviderSummarizer(provider, "claude-test")

        summary = asyncio.run(summarizer.summarize(_conversation(2), "before"))

        self.assertEqual("model summary", summary)
        request = provider.requests[0]
        self.assertEqual("claude-test", request["model"])
        prompt = request["messages"][0]["content"]
        self.assertIn("PREVIOUS SUMMARY:\n\nbefore", prompt)
        self.assertIn("[user]: question 0", prompt)
        self.assertIn("[assistant]: answer 1", prompt)

    def test_provider_failure_raises_summarization_failure(self) -> None:
        summarizer = ProviderSummarizer(_FakeProvider(error=RuntimeError("503")), "claude-test")
        with self.assertRaises(SummarizationFailure):
            asyncio.run(summarizer.summarize(_conversation(2), None))

    def test_provider_failure_uses_fallback(self) -> None:
        summarizer = ProviderSummarizer(
            _FakeProvider(error=RuntimeError("503")),
            "claude-test",
            fallback=ExtractiveSummarizer(),
        )
        summary = asyncio.run(summarizer.summarize(_conversation(2), None))
        self.assertIn("Conversation covered 2 messages", summary)

    def test_format_includes_tool_calls_and_results(self) -> None:
        messages = [
            ChatMessage.assistant("checking", tool_calls=(ToolCall("c1", "search", '{"q": "x"}'),)),
            ChatMessage.tool("c1", "x" * 1000),
        ]
        formatted = format_for_summarization(messages)
        self.assertIn('[Tool call: search({"q": "x"})]', formatted)
        self.assertIn("[Tool result (c1)]", formatted)
        self.assertIn("[...truncated...]", formatted)


class ContextWindowTests(unittest.TestCase):
    def test_summary_injected_only_for_long_history(self) -> None:
        short = _conversation(10)
        window = build_context_window("sys", short, "digest", recent_count=15)
        self.assertEqual(11, len(window))
        self.assertEqual("sys", window[0].text)

        long = _conversation(30)
        window = build_context_window("sys", long, "digest", recent_count=15)
        self.assertEqual(17, len(window))
        self.assertEqual("[Previous conversation summary: digest]", window[1].text)
        self.assertEqual(long[-15:], window[2:])

    def test_sanitize_drops_empty_assistant_messages(self) -> None:
        call = ChatMessage.assistant("", tool_calls=(ToolCall("c1", "search"),))
        messages = [ChatMessage.user("hi"), ChatMessage.assistant("  "), call]
        cleaned = sanitize_messages(messages)
        self.assertEqual([messages[0], call], cleaned)
        self.assertEqual(Role.ASSISTANT, cleaned[1].role)


if __name__ == "__main__":
    unittest.main()
