"""Token counting, cost estimation and budget math.

Everything here is built on a black-box ``Encoder`` (``encode``/``decode``).
The default encoder wraps tiktoken; tests inject a deterministic word-level
encoder. Counting never raises: if the encoder fails the estimator falls
back to a ~4 characters per token heuristic.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Callable, Iterator
from typing import Any, Protocol, runtime_checkable

import tiktoken
from loguru import logger

from chat_context_engine.models import (
    ChatMessage,
    ContextTokens,
    CostBreakdown,
    ImagePart,
    PartsContent,
    PromptParts,
    Role,
    TextChunk,
    TextContent,
    TextPart,
    TokenBudgetSnapshot,
    ToolResultContent,
)

DEFAULT_MODEL = "gpt-4"

MESSAGE_FRAME_TOKENS = 4
MESSAGE_LIST_WRAPPER_TOKENS = 3
TOOL_CALL_WRAPPER_TOKENS = 3
IMAGE_PART_TOKENS = 85

TRUNCATION_MARKER = "\n\n[... content truncated ...]"

# USD per 1K tokens.
MODEL_PRICING: dict[str, dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-3.5-turbo": {"input": 0.0005, "output": 0.0015},
    "claude-3-opus": {"input": 0.015, "output": 0.075},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
}

MODEL_TOKEN_LIMITS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "claude-3-opus": 200000,
    "claude-3-sonnet": 200000,
    "claude-3-haiku": 200000,
}

_WORD_RE = re.compile(r"\S+")


@runtime_checkable
class Encoder(Protocol):
    def encode(self, text: str) -> list[int]: ...
    def decode(self, tokens: list[int]) -> str: ...


class TiktokenEncoder:
    def __init__(self, model: str = DEFAULT_MODEL):
        try:
            self._encoding = tiktoken.encoding_for_model(model)
        except KeyError:
            logger.debug(f"No tiktoken encoding for {model!r}, using {DEFAULT_MODEL} encoding")
            self._encoding = tiktoken.encoding_for_model(DEFAULT_MODEL)

    def encode(self, text: str) -> list[int]:
        # Special-token text in user content is counted as plain text.
        return self._encoding.encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._encoding.decode(tokens)


class TokenEstimator:
    def __init__(
        self,
        encoder_factory: Callable[[str], Encoder] = TiktokenEncoder,
        model: str = DEFAULT_MODEL,
    ):
        self._encoder_factory = encoder_factory
        self._model = model
        self._encoders: dict[str, Encoder] = {}
        self._encoder: Encoder | None = None

    @property
    def model(self) -> str:
        return self._model

    @property
    def initialized(self) -> bool:
        return self._encoder is not None

    def init(self, model: str | None = None) -> None:
        if model is not None:
            self._model = model
        if self._model not in self._encoders:
            self._encoders[self._model] = self._encoder_factory(self._model)
        self._encoder = self._encoders[self._model]

    def reset(self) -> None:
        self._encoder = None
        self._encoders.clear()

    def _get_encoder(self) -> Encoder:
        if self._encoder is None:
            self.init()
        return self._encoder

    # --- counting ----------------------------------------------------------

    def count_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        try:
            return len(self._get_encoder().encode(text))
        except Exception as ex:
            logger.warning(f"Token encoding failed, using character estimate: {ex}")
            return self.estimate_tokens(text)

    def estimate_tokens(self, text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def count_message_tokens(self, message: ChatMessage) -> int:
        tokens = MESSAGE_FRAME_TOKENS
        tokens += self.count_tokens(message.role.value)
        tokens += self._count_content_tokens(message)

        for call in message.tool_calls:
            tokens += TOOL_CALL_WRAPPER_TOKENS
            tokens += self.count_tokens(call.name)
            tokens += self.count_tokens(call.arguments)

        if message.role == Role.TOOL and message.tool_call_id:
            tokens += self.count_tokens(message.tool_call_id)

        return tokens

    def _count_content_tokens(self, message: ChatMessage) -> int:
        content = message.content
        if isinstance(content, TextContent):
            return self.count_tokens(content.text)
        if isinstance(content, ToolResultContent):
            return self.count_tokens(content.text)
        if isinstance(content, PartsContent):
            tokens = 0
            for part in content.parts:
                if isinstance(part, TextPart):
                    tokens += self.count_tokens(part.text)
                elif isinstance(part, ImagePart):
                    tokens += IMAGE_PART_TOKENS
                else:
                    raise TypeError(f"Unsupported content part: {type(part).__name__}")
            return tokens
        raise TypeError(f"Unsupported message content: {type(content).__name__}")

    def count_messages_tokens(self, messages: list[ChatMessage]) -> int:
        if not messages:
            return 0
        return sum(self.count_message_tokens(m) for m in messages) + MESSAGE_LIST_WRAPPER_TOKENS

    def count_tool_tokens(self, tools: list[dict[str, Any]] | None) -> int:
        if not tools:
            return 0
        return self.count_tokens(json.dumps(tools, separators=(",", ":"), sort_keys=True, ensure_ascii=False))

    def calculate_context_tokens(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
    ) -> ContextTokens:
        breakdown = {role.value: 0 for role in (Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL)}
        per_message = 0
        for message in messages:
            tokens = self.count_message_tokens(message)
            breakdown[message.role.value] += tokens
            per_message += tokens

        message_tokens = per_message + MESSAGE_LIST_WRAPPER_TOKENS if messages else 0
        tool_tokens = self.count_tool_tokens(tools)
        return ContextTokens(
            message_tokens=message_tokens,
            tool_tokens=tool_tokens,
            total_tokens=message_tokens + tool_tokens,
            breakdown=breakdown,
        )

    # --- budget and cost ---------------------------------------------------

    def get_model_token_limit(self, model: str | None = None) -> int:
        return MODEL_TOKEN_LIMITS.get(model or self._model, MODEL_TOKEN_LIMITS[DEFAULT_MODEL])

    def get_token_budget(self, messages: list[ChatMessage], model: str | None = None) -> TokenBudgetSnapshot:
        limit = self.get_model_token_limit(model)
        used = self.count_messages_tokens(messages)
        return TokenBudgetSnapshot(
            used=used,
            remaining=max(0, limit - used),
            limit=limit,
            percentage=used / limit * 100,
        )

    def estimate_cost(self, tokens: int, model: str | None = None, is_output: bool = False) -> float:
        pricing = MODEL_PRICING.get(model or self._model, MODEL_PRICING[DEFAULT_MODEL])
        rate = pricing["output"] if is_output else pricing["input"]
        return tokens / 1000 * rate

    def get_cost(self, input_tokens: int, output_tokens: int, model: str | None = None) -> CostBreakdown:
        return CostBreakdown(
            input_cost=self.estimate_cost(input_tokens, model, is_output=False),
            output_cost=self.estimate_cost(output_tokens, model, is_output=True),
        )

    def validate_token_limit(self, text: str, limit: int) -> None:
        tokens = self.count_tokens(text)
        if tokens > limit:
            raise ValueError(f"Text exceeds token limit: {tokens} tokens (limit: {limit})")

    # --- text shaping ------------------------------------------------------

    def truncate_to_token_limit(self, text: str, max_tokens: int, add_ellipsis: bool = True) -> str:
        if not text:
            return ""
        try:
            encoder = self._get_encoder()
            tokens = encoder.encode(text)
            if len(tokens) <= max_tokens:
                return text
            target = max(0, max_tokens - 5 if add_ellipsis else max_tokens)
            # A cut inside a multi-byte sequence decodes to U+FFFD.
            truncated = encoder.decode(tokens[:target]).rstrip("�")
        except Exception as ex:
            logger.warning(f"Token truncation failed, using character cut: {ex}")
            estimated_chars = max_tokens * 4
            if len(text) <= estimated_chars:
                return text
            truncated = text[: max(0, estimated_chars - (30 if add_ellipsis else 0))]
        return truncated + TRUNCATION_MARKER if add_ellipsis else truncated

    def fit_to_token_limit(self, text: str, max_tokens: int, marker: str) -> str:
        """Cut ``text`` so that ``cut + marker`` counts at most ``max_tokens``.

        Returns ``text`` unchanged when it already fits. The cut is made on a
        token boundary and never leaves a partial code point behind.
        """
        if self.count_tokens(text) <= max_tokens:
            return text
        budget = max_tokens - self.count_tokens(marker)
        if budget <= 0:
            return marker
        try:
            encoder = self._get_encoder()
            tokens = encoder.encode(text)[:budget]
            cut = encoder.decode(tokens).rstrip("�")
            # Re-encoding a decoded prefix can merge into a different count.
            while cut and self.count_tokens(cut + marker) > max_tokens:
                tokens = tokens[:-1]
                cut = encoder.decode(tokens).rstrip("�")
        except Exception as ex:
            logger.warning(f"Token truncation failed, using character cut: {ex}")
            cut = text[: budget * 4]
            while cut and self.estimate_tokens(cut + marker) > max_tokens:
                cut = cut[:-4]
        return cut + marker

    def split_text_into_chunks(
        self,
        text: str,
        max_tokens_per_chunk: int,
        overlap_tokens: int = 0,
    ) -> Iterator[TextChunk]:
        """Yield word-aligned chunks of at most ``max_tokens_per_chunk`` tokens.

        Indices refer to ``text``. A single word longer than the limit is
        yielded on its own, so a chunk may exceed the limit in that case.
        """
        spans = [(m.start(), m.end()) for m in _WORD_RE.finditer(text or "")]
        i = 0
        while i < len(spans):
            start, end = spans[i]
            last = i
            k = i + 1
            while k < len(spans):
                candidate_end = spans[k][1]
                if self.count_tokens(text[start:candidate_end]) > max_tokens_per_chunk:
                    break
                end = candidate_end
                last = k
                k += 1

            yield TextChunk(text=text[start:end], start_index=start, end_index=end)

            if last + 1 >= len(spans):
                return
            next_i = last + 1
            if overlap_tokens > 0:
                overlap_words = math.ceil(overlap_tokens * 0.75)
                next_i = max(i + 1, next_i - overlap_words)
            i = next_i

    def optimize_prompt(self, parts: PromptParts, max_tokens: int) -> str:
        """User input is always kept verbatim; context is cut before instruction."""
        remaining = max_tokens - self.count_tokens(parts.user_input)
        sections = [parts.user_input]

        instruction_tokens = self.count_tokens(parts.instruction)
        if parts.instruction:
            if remaining >= instruction_tokens:
                sections.insert(0, parts.instruction)
                remaining -= instruction_tokens
            elif remaining > 0:
                sections.insert(0, self.truncate_to_token_limit(parts.instruction, remaining, add_ellipsis=False))
                remaining = 0

        if parts.context and remaining > 10:
            sections.insert(0, self.truncate_to_token_limit(parts.context, remaining - 10))

        return "\n\n".join(s for s in sections if s)
