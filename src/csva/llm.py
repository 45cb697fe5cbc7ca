"""Language model adapter."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol

import openai
from loguru import logger
from openai import AsyncOpenAI

from csva.errors import ModelCallError

type ChatMessage = dict[str, Any]


@dataclass(frozen=True)
class ModelToolCall:
    """One tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any]

    def to_message_part(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


@dataclass(frozen=True)
class ModelReply:
    """One non-streamed model reply."""

    content: str
    tool_calls: list[ModelToolCall] = field(default_factory=list)

    def to_message(self) -> ChatMessage:
        message: ChatMessage = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message_part() for call in self.tool_calls]
        return message


class ChatModel(Protocol):
    """Chat completion backend with tool calling."""

    async def complete(self, messages: list[ChatMessage], tools: list[dict[str, Any]]) -> ModelReply: ...


class OpenRouterChatModel:
    """OpenAI-compatible chat completions against OpenRouter."""

    DEFAULT_HEADERS: ClassVar[dict[str, str]] = {"X-Title": "csva"}

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        api_base: str,
        max_tokens: int,
        app_url: str,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=api_base,
            default_headers={**self.DEFAULT_HEADERS, "HTTP-Referer": app_url},
            max_retries=0,
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, messages: list[ChatMessage], tools: list[dict[str, Any]]) -> ModelReply:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": self._max_tokens,
            "stream": False,
        }
        if tools:
            kwargs["tools"] = tools
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as exc:
            raise ModelCallError(f"model_call_error: {exc!s}") from exc

        if not response.choices:
            raise ModelCallError("model_call_error: empty choices")
        message = response.choices[0].message
        calls: list[ModelToolCall] = []
        for call in message.tool_calls or []:
            calls.append(
                ModelToolCall(
                    id=call.id,
                    name=call.function.name,
                    arguments=parse_arguments(call.function.arguments),
                )
            )
        return ModelReply(content=message.content or "", tool_calls=calls)


def parse_arguments(raw: str | None) -> dict[str, Any]:
    """Decode a tool-call argument string; malformed JSON yields no arguments."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("model.tool_args.invalid raw={}", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {"value": parsed}
