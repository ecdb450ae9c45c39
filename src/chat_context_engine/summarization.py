from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from loguru import logger

from chat_context_engine.errors import SummarizationFailure
from chat_context_engine.models import ChatMessage, Role
from chat_context_engine.tokenizer import TokenEstimator

DEFAULT_RECENT_MESSAGE_COUNT = 15

_SUMMARIZE_PROMPT = """\
Summarize the following conversation history between a user and an AI assistant.
Preserve these details precisely:
- Key questions asked by the user and any specific criteria or instructions
- Important information discovered and the tools that were used
- Main conclusions, decisions and action items
- Any ongoing context that should be remembered

Do NOT include raw tool output data, just note what was retrieved and key findings.

Format as a concise narrative summary.

"""

_MAX_FORMATTED_CHARS = 100_000


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, messages: list[ChatMessage], previous_summary: str | None) -> str: ...


@runtime_checkable
class MessageProvider(Protocol):
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str: ...


def format_for_summarization(messages: list[ChatMessage]) -> str:
    parts = []
    for msg in messages:
        if msg.role == Role.TOOL:
            parts.append(f"[Tool result ({msg.tool_call_id or ''})]: {_preview_text(msg.text)}")
            continue
        text = msg.text
        for call in msg.tool_calls:
            arguments = call.arguments if len(call.arguments) <= 200 else call.arguments[:200] + "..."
            text += f"\n[Tool call: {call.name}({arguments})]"
        parts.append(f"[{msg.role.value}]: {text}")
    return "\n\n".join(parts)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]


class ExtractiveSummarizer:
    """Summary without a model call: lists what the user asked about."""

    async def summarize(self, messages: list[ChatMessage], previous_summary: str | None) -> str:
        topics = [
            f"{i + 1}. {m.text[:100]}..."
            for i, m in enumerate(m for m in messages if m.role == Role.USER)
        ]
        summary = f"Conversation covered {len(messages)} messages about:\n" + "\n".join(topics)
        if previous_summary:
            summary = previous_summary + "\n\n" + summary
        return summary


class ProviderSummarizer:
    def __init__(
        self,
        provider: MessageProvider,
        model: str,
        *,
        max_tokens: int = 4096,
        fallback: Summarizer | None = None,
    ):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._fallback = fallback

    async def summarize(self, messages: list[ChatMessage], previous_summary: str | None) -> str:
        formatted = format_for_summarization(messages)
        if len(formatted) > _MAX_FORMATTED_CHARS:
            half = _MAX_FORMATTED_CHARS // 2
            formatted = (
                formatted[:half]
                + "\n\n[...middle of conversation omitted for brevity...]\n\n"
                + formatted[-half:]
            )

        prompt = _SUMMARIZE_PROMPT
        if previous_summary:
            prompt += f"---\nPREVIOUS SUMMARY:\n\n{previous_summary}\n\n"
        prompt += f"---\nCONVERSATION HISTORY:\n\n{formatted}"

        try:
            return await self._provider.create_message(
                self._model,
                self._max_tokens,
                0,
                [{"role": "user", "content": prompt}],
            )
        except Exception as ex:
            if self._fallback is None:
                raise SummarizationFailure(f"Summary request failed: {ex}") from ex
            logger.warning(f"Summary request failed, using fallback summary: {ex}")
            return await self._fallback.summarize(messages, previous_summary)


class SummarizationTrigger:
    """Decides when to compress history and runs the summarizer off the send path.

    ``is_summarizing`` is true only while a summary call is outstanding, and
    ``current_summary`` keeps the last digest until a newer one replaces it.
    """

    def __init__(
        self,
        summarizer: Summarizer,
        estimator: TokenEstimator,
        *,
        min_messages: int = 20,
        every_messages: int = 10,
        threshold_tokens: int = 80_000,
        keep_recent: int = 5,
        on_summary: Callable[[str], None] | None = None,
    ):
        self._summarizer = summarizer
        self._estimator = estimator
        self._min_messages = min_messages
        self._every_messages = max(1, every_messages)
        self._threshold_tokens = threshold_tokens
        self._keep_recent = max(0, keep_recent)
        self._on_summary = on_summary
        self._current_summary: str | None = None
        self._is_summarizing = False
        self._read_only = False
        self._task: asyncio.Task | None = None

    @property
    def is_summarizing(self) -> bool:
        return self._is_summarizing

    @property
    def current_summary(self) -> str | None:
        return self._current_summary

    @property
    def read_only(self) -> bool:
        return self._read_only

    @read_only.setter
    def read_only(self, value: bool) -> None:
        self._read_only = value

    def restore(self, summary: str | None) -> None:
        self._current_summary = summary

    def reset(self) -> None:
        self._current_summary = None

    def should_summarize(self, messages: list[ChatMessage]) -> bool:
        if self._read_only or self._is_summarizing:
            return False
        count = len(messages)
        if count >= self._min_messages and count % self._every_messages == 0:
            return True
        if self._threshold_tokens > 0 and count > self._keep_recent:
            return self._estimator.count_messages_tokens(messages) >= self._threshold_tokens
        return False

    def _messages_to_summarize(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        keep = self._keep_recent * 2 if self._current_summary else self._keep_recent
        if keep == 0:
            return list(messages)
        return list(messages[:-keep])

    async def summarize(self, messages: list[ChatMessage]) -> str | None:
        if self._read_only:
            logger.debug("Summarization skipped: session is read-only")
            self._is_summarizing = False
            return None

        to_summarize = self._messages_to_summarize(messages)
        if not to_summarize:
            self._is_summarizing = False
            return None

        self._is_summarizing = True
        logger.info(f"Summarizing {len(to_summarize)} of {len(messages)} messages")
        try:
            summary = await self._summarizer.summarize(to_summarize, self._current_summary)
        except Exception as ex:
            logger.warning(f"Summarization failed, will retry on the next qualifying turn: {ex}")
            return None
        finally:
            self._is_summarizing = False

        if not summary:
            return None

        self._current_summary = summary
        logger.info(f"Summary updated (~{self._estimator.count_tokens(summary):,} tokens)")
        if self._on_summary is not None:
            self._on_summary(summary)
        return summary

    def maybe_summarize(self, messages: list[ChatMessage]) -> asyncio.Task | None:
        """Start a background summary if due. Never blocks the caller."""
        if not self.should_summarize(messages):
            return None
        self._is_summarizing = True
        self._task = asyncio.create_task(self.summarize(list(messages)))
        return self._task

    async def wait(self) -> None:
        if self._task is not None and not self._task.done():
            await self._task


def build_context_window(
    system_prompt: str,
    messages: list[ChatMessage],
    summary: str | None = None,
    recent_count: int = DEFAULT_RECENT_MESSAGE_COUNT,
) -> list[ChatMessage]:
    """System prompt, the summary when history is long, then the recent messages."""
    if recent_count <= 0:
        recent_count = DEFAULT_RECENT_MESSAGE_COUNT

    window = [ChatMessage.system(system_prompt)]
    if summary and len(messages) > recent_count:
        window.append(ChatMessage.system(f"[Previous conversation summary: {summary}]"))
    window.extend(messages[-recent_count:])
    return sanitize_messages(window)


def sanitize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Drop empty assistant messages left behind by a cancelled stream."""
    return [
        m
        for m in messages
        if not (m.role == Role.ASSISTANT and not m.text.strip() and not m.tool_calls)
    ]
