from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic
from loguru import logger
from tenacity import retry

from chat_context_engine.models import ChatMessage, Role, ToolResultContent
from chat_context_engine.providers.common import default_retry_kwargs

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


def to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
    """Split out system text and convert the rest to Anthropic message dicts."""
    system_parts: list[str] = []
    out: list[dict] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.text)
            continue

        if msg.role == Role.TOOL:
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id or "",
                "content": msg.text,
            }
            if isinstance(msg.content, ToolResultContent) and msg.content.is_error:
                block["is_error"] = True
            out.append({"role": "user", "content": [block]})
            continue

        if msg.role == Role.ASSISTANT and msg.tool_calls:
            blocks: list[dict] = []
            if msg.text:
                blocks.append({"type": "text", "text": msg.text})
            for call in msg.tool_calls:
                try:
                    tool_input = json.loads(call.arguments or "{}")
                except json.JSONDecodeError:
                    tool_input = {"raw": call.arguments}
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": tool_input})
            out.append({"role": "assistant", "content": blocks})
            continue

        out.append({"role": msg.role.value, "content": msg.text})

    return "\n\n".join(system_parts), out


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for summarization)."""
        logger.debug(f"Summary API request: model={model}, messages={len(messages)}")
        response = await self._client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
        )
        usage = response.usage
        logger.debug(
            f"Summary API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return response.content[0].text

    async def send_completion(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream text deltas for a chat completion."""
        system_prompt, converted = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": options.get("model", "claude-sonnet-4-5-20250929"),
            "max_tokens": int(options.get("max_tokens", 8192)),
            "temperature": float(options.get("temperature", 1.0)),
            "messages": converted,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tools:
            kwargs["tools"] = tools

        logger.debug(
            f"API request: model={kwargs['model']}, max_tokens={kwargs['max_tokens']}, "
            f"messages={len(converted)}, tools={len(tools)}"
        )
        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield event.delta.text
