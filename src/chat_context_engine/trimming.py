from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from chat_context_engine.models import (
    ChatMessage,
    PartsContent,
    Role,
    TextContent,
    ToolResultContent,
)
from chat_context_engine.tokenizer import MESSAGE_LIST_WRAPPER_TOKENS, TokenEstimator

DEFAULT_MAX_TOTAL_TOKENS = 100_000
SYSTEM_MESSAGE_BUFFER = 1000
MAX_TOOL_RESPONSE_TOKENS = 8000
AGGRESSIVE_TOOL_RESPONSE_TOKENS = 500

TOOL_TRUNCATION_MARKER = "\n[...truncated]"


class TrimTier(str, Enum):
    PASS_THROUGH = "pass_through"
    TOOL_TRIM = "tool_trim"
    AGGRESSIVE_TOOL_TRIM = "aggressive_tool_trim"
    HISTORY_DROP = "history_drop"
    MINIMUM = "minimum"


@dataclass(frozen=True)
class TrimResult:
    messages: list[ChatMessage]
    total_tokens: int
    tier: TrimTier
    overflow: bool


class MessageTrimmer:
    """Fits a message view into a token budget.

    Tiers run in order and stop as soon as the payload fits: pass-through,
    tool response trim, aggressive tool response trim, history drop. The
    input list is never mutated.
    """

    def __init__(
        self,
        estimator: TokenEstimator,
        *,
        max_tool_response_tokens: int = MAX_TOOL_RESPONSE_TOKENS,
        aggressive_tool_response_tokens: int = AGGRESSIVE_TOOL_RESPONSE_TOKENS,
        system_message_buffer: int = SYSTEM_MESSAGE_BUFFER,
        default_max_tokens: int = DEFAULT_MAX_TOTAL_TOKENS,
    ):
        self._estimator = estimator
        self._max_tool_response_tokens = max_tool_response_tokens
        self._aggressive_tool_response_tokens = aggressive_tool_response_tokens
        self._system_message_buffer = system_message_buffer
        self._default_max_tokens = default_max_tokens

    def trim(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> list[ChatMessage]:
        return self.trim_detailed(messages, tools, max_tokens).messages

    def trim_detailed(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> TrimResult:
        if max_tokens is None or max_tokens <= 0:
            max_tokens = self._default_max_tokens

        total = self._total(messages, tools)
        if total <= max_tokens:
            return TrimResult(list(messages), total, TrimTier.PASS_THROUGH, False)

        trimmed = self._trim_tool_responses(messages, self._max_tool_response_tokens)
        total = self._total(trimmed, tools)
        if total <= max_tokens:
            logger.info(f"Trimmed tool responses to {self._max_tool_response_tokens:,} tokens, total {total:,}")
            return TrimResult(trimmed, total, TrimTier.TOOL_TRIM, False)

        trimmed = self._trim_tool_responses(trimmed, self._aggressive_tool_response_tokens)
        total = self._total(trimmed, tools)
        if total <= max_tokens:
            logger.info(
                f"Aggressively trimmed tool responses to {self._aggressive_tool_response_tokens:,} tokens, "
                f"total {total:,}"
            )
            return TrimResult(trimmed, total, TrimTier.AGGRESSIVE_TOOL_TRIM, False)

        return self._drop_history(trimmed, tools, max_tokens)

    def _total(self, messages: list[ChatMessage], tools: list[dict[str, Any]] | None) -> int:
        return self._estimator.calculate_context_tokens(messages, tools).total_tokens

    def _trim_tool_responses(self, messages: list[ChatMessage], ceiling: int) -> list[ChatMessage]:
        out: list[ChatMessage] = []
        for message in messages:
            if message.role != Role.TOOL:
                out.append(message)
                continue
            text = message.text
            if self._estimator.count_tokens(text) <= ceiling:
                out.append(message)
                continue
            cut = self._estimator.fit_to_token_limit(text, ceiling, TOOL_TRUNCATION_MARKER)
            out.append(message.with_content(_replace_text(message, cut)))
        return out

    def _drop_history(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
    ) -> TrimResult:
        system: ChatMessage | None = None
        rest = messages
        if messages and messages[0].role == Role.SYSTEM:
            system = messages[0]
            rest = messages[1:]
        head = [system] if system is not None else []

        fixed = MESSAGE_LIST_WRAPPER_TOKENS + self._estimator.count_tool_tokens(tools)
        if system is not None:
            fixed += self._estimator.count_message_tokens(system)
        target = max_tokens - self._system_message_buffer

        # Newest to oldest; suffix totals only grow, so stop at the first miss.
        best: int | None = None
        running = fixed
        for i in range(len(rest) - 1, -1, -1):
            running += self._estimator.count_message_tokens(rest[i])
            if running > target:
                break
            # A kept suffix must not open on a tool result without its call.
            if rest[i].role != Role.TOOL:
                best = i

        if best is not None:
            result = head + list(rest[best:])
            total = self._total(result, tools)
            logger.info(f"Dropped {best} oldest messages to fit budget, total {total:,}/{max_tokens:,}")
            return TrimResult(result, total, TrimTier.HISTORY_DROP, False)

        result = head + ([rest[-1]] if rest else [])
        total = self._total(result, tools)
        overflow = total > max_tokens
        if overflow:
            logger.warning(
                f"Budget overflow: minimum context needs {total:,} tokens, budget is {max_tokens:,}"
            )
        return TrimResult(result, total, TrimTier.MINIMUM, overflow)


def _replace_text(message: ChatMessage, text: str):
    content = message.content
    if isinstance(content, ToolResultContent):
        return ToolResultContent(text, content.is_error)
    if isinstance(content, (TextContent, PartsContent)):
        return TextContent(text)
    raise TypeError(f"Unsupported message content: {type(content).__name__}")
