import unittest

from chat_context_engine.models import (
    ChatMessage,
    ImagePart,
    PartsContent,
    PromptParts,
    Role,
    TextPart,
    ToolCall,
)
from chat_context_engine.tokenizer import (
    IMAGE_PART_TOKENS,
    TRUNCATION_MARKER,
    TokenEstimator,
)
from tests.base import WordEncoder, make_estimator, words


class _BrokenEncoder:
    def __init__(self, model: str = "test"):
        pass

    def encode(self, text: str) -> list[int]:
        raise RuntimeError("boom")

    def decode(self, tokens: list[int]) -> str:
        raise RuntimeError("boom")


class TokenEstimatorLifecycleTests(unittest.TestCase):
    def test_init_is_lazy_and_reset_drops_encoder(self) -> None:
        created: list[str] = []

        def factory(model: str) -> WordEncoder:
            created.append(model)
            return WordEncoder(model)

        estimator = TokenEstimator(encoder_factory=factory, model="gpt-4o")
        self.assertFalse(estimator.initialized)
        self.assertEqual(3, estimator.count_tokens("one two three"))
        self.assertTrue(estimator.initialized)

        estimator.init()
        self.assertEqual(["gpt-4o"], created)

        estimator.reset()
        self.assertFalse(estimator.initialized)
        estimator.count_tokens("again")
        self.assertEqual(["gpt-4o", "gpt-4o"], created)

    def test_init_with_model_switches_encoder(self) -> None:
        estimator = make_estimator()
        estimator.init("claude-3-haiku")
        self.assertEqual("claude-3-haiku", estimator.model)
        self.assertEqual(200000, estimator.get_model_token_limit())

    def test_encoder_failure_falls_back_to_character_estimate(self) -> None:
        estimator = TokenEstimator(encoder_factory=_BrokenEncoder)
        self.assertEqual(3, estimator.count_tokens("x" * 10))
        self.assertEqual(0, estimator.count_tokens(""))


class TokenCountingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.estimator = make_estimator()

    def test_message_tokens_include_framing_and_role(self) -> None:
        message = ChatMessage.user(words(10))
        self.assertEqual(4 + 1 + 10, self.estimator.count_message_tokens(message))

    def test_tool_calls_and_tool_call_id_are_counted(self) -> None:
        assistant = ChatMessage.assistant("", tool_calls=(ToolCall("c1", "search", "{}"),))
        self.assertEqual(4 + 1 + 3 + 1 + 1, self.estimator.count_message_tokens(assistant))

        tool = ChatMessage.tool("call-1", words(7))
        self.assertEqual(4 + 1 + 7 + 1, self.estimator.count_message_tokens(tool))

    def test_image_parts_have_fixed_cost(self) -> None:
        message = ChatMessage(
            role=Role.USER,
            content=PartsContent((TextPart("look here"), ImagePart("https://example.com/a.png"))),
        )
        self.assertEqual(4 + 1 + 2 + IMAGE_PART_TOKENS, self.estimator.count_message_tokens(message))

    def test_list_wrapper_only_when_non_empty(self) -> None:
        self.assertEqual(0, self.estimator.count_messages_tokens([]))
        messages = [ChatMessage.user("hi"), ChatMessage.assistant("hello there")]
        self.assertEqual((4 + 1 + 1) + (4 + 1 + 2) + 3, self.estimator.count_messages_tokens(messages))

    def test_context_tokens_break_down_by_role(self) -> None:
        messages = [ChatMessage.system("be brief"), ChatMessage.user("hi")]
        tools = [{"name": "search", "description": "find things"}]
        context = self.estimator.calculate_context_tokens(messages, tools)
        self.assertEqual(4 + 1 + 2, context.breakdown["system"])
        self.assertEqual(4 + 1 + 1, context.breakdown["user"])
        self.assertEqual(0, context.breakdown["tool"])
        self.assertGreater(context.tool_tokens, 0)
        self.assertEqual(context.message_tokens + context.tool_tokens, context.total_tokens)


class BudgetAndCostTests(unittest.TestCase):
    def setUp(self) -> None:
        self.estimator = make_estimator()

    def test_unknown_model_uses_default_tables(self) -> None:
        self.assertEqual(8192, self.estimator.get_model_token_limit("mystery-model"))
        self.assertAlmostEqual(0.03, self.estimator.estimate_cost(1000, "mystery-model"))

    def test_cost_breakdown_totals(self) -> None:
        cost = self.estimator.get_cost(2000, 1000, "gpt-4")
        self.assertAlmostEqual(0.06, cost.input_cost)
        self.assertAlmostEqual(0.06, cost.output_cost)
        self.assertAlmostEqual(0.12, cost.total_cost)

    def test_token_budget_snapshot(self) -> None:
        messages = [ChatMessage.user(words(95))]
        budget = self.estimator.get_token_budget(messages)
        self.assertEqual(103, budget.used)
        self.assertEqual(8192 - 103, budget.remaining)
        self.assertEqual(8192, budget.limit)
        self.assertAlmostEqual(103 / 8192 * 100, budget.percentage)

    def test_validate_token_limit_raises_when_exceeded(self) -> None:
        self.estimator.validate_token_limit(words(5), 5)
        with self.assertRaises(ValueError):
            self.estimator.validate_token_limit(words(6), 5)


class TextShapingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.estimator = make_estimator()

    def test_truncate_keeps_short_text(self) -> None:
        self.assertEqual("a b c", self.estimator.truncate_to_token_limit("a b c", 10))

    def test_truncate_appends_marker(self) -> None:
        result = self.estimator.truncate_to_token_limit(words(50), 20)
        self.assertTrue(result.endswith(TRUNCATION_MARKER))
        self.assertEqual(words(15), result[: -len(TRUNCATION_MARKER)])

    def test_truncate_without_ellipsis(self) -> None:
        self.assertEqual(words(20), self.estimator.truncate_to_token_limit(words(50), 20, add_ellipsis=False))

    def test_truncate_strips_partial_code_point(self) -> None:
        class _ReplacementEncoder(WordEncoder):
            def decode(self, tokens: list[int]) -> str:
                return super().decode(tokens) + "�"

        estimator = TokenEstimator(encoder_factory=_ReplacementEncoder)
        result = estimator.truncate_to_token_limit(words(50), 10, add_ellipsis=False)
        self.assertNotIn("�", result)

    def test_fit_to_token_limit_includes_marker_in_ceiling(self) -> None:
        marker = "\n[...truncated]"
        result = self.estimator.fit_to_token_limit(words(100), 20, marker)
        self.assertTrue(result.endswith(marker))
        self.assertLessEqual(self.estimator.count_tokens(result), 20)
        self.assertEqual(result, self.estimator.fit_to_token_limit(result, 20, marker))

    def test_fit_to_token_limit_returns_marker_when_budget_is_tiny(self) -> None:
        self.assertEqual(" [cut]", self.estimator.fit_to_token_limit(words(100), 1, " [cut]"))

    def test_split_text_into_chunks_preserves_indices(self) -> None:
        text = "alpha beta gamma delta epsilon zeta"
        chunks = list(self.estimator.split_text_into_chunks(text, 2))
        self.assertEqual(["alpha beta", "gamma delta", "epsilon zeta"], [c.text for c in chunks])
        for chunk in chunks:
            self.assertEqual(chunk.text, text[chunk.start_index:chunk.end_index])

    def test_split_text_into_chunks_with_overlap(self) -> None:
        text = "a b c d e f"
        chunks = [c.text for c in self.estimator.split_text_into_chunks(text, 3, overlap_tokens=1)]
        self.assertEqual(["a b c", "c d e", "e f"], chunks)

    def test_split_text_is_restartable(self) -> None:
        text = words(10)
        first = list(self.estimator.split_text_into_chunks(text, 4))
        second = list(self.estimator.split_text_into_chunks(text, 4))
        self.assertEqual(first, second)

    def test_optimize_prompt_keeps_user_input_verbatim(self) -> None:
        parts = PromptParts(instruction=words(10, "i"), user_input=words(5, "u"), context=words(100, "c"))
        prompt = self.estimator.optimize_prompt(parts, 40)
        self.assertTrue(prompt.endswith(words(5, "u")))
        self.assertIn(words(10, "i"), prompt)
        self.assertIn(TRUNCATION_MARKER, prompt)

    def test_optimize_prompt_cuts_instruction_last(self) -> None:
        parts = PromptParts(instruction=words(10, "i"), user_input=words(8, "u"))
        prompt = self.estimator.optimize_prompt(parts, 12)
        self.assertEqual(words(4, "i") + "\n\n" + words(8, "u"), prompt)


if __name__ == "__main__":
    unittest.main()
