from __future__ import annotations

import asyncio
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from csva.channels.events import ChannelEvent
from csva.core.progress import ToolProgress
from csva.llm import ChatMessage, ModelReply, ModelToolCall
from csva.message_store.service import MessageStore
from csva.tools.knowledge import KnowledgeBase, create_knowledge_qa_tool
from csva.tools.registry import ToolRegistry

HOURS_ANSWER = "We're open 9–6 Tue–Sat."


class ScriptedModel:
    """Replays a fixed list of replies; an exception in the list is raised instead."""

    def __init__(self, replies: list[ModelReply | Exception]) -> None:
        self.replies = list(replies)
        self.calls: list[list[ChatMessage]] = []

    async def complete(self, messages: list[ChatMessage], tools: list[dict[str, Any]]) -> ModelReply:
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("model called more often than scripted")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class LoopingModel:
    """Always asks for one more tool call."""

    def __init__(self, tool_name: str = "knowledge_qa") -> None:
        self.tool_name = tool_name
        self.count = 0

    async def complete(self, messages: list[ChatMessage], tools: list[dict[str, Any]]) -> ModelReply:
        self.count += 1
        return ModelReply(
            content="",
            tool_calls=[ModelToolCall(id=f"call_loop_{self.count}", name=self.tool_name, arguments={"query": "hours"})],
        )


class SlowModel:
    async def complete(self, messages: list[ChatMessage], tools: list[dict[str, Any]]) -> ModelReply:
        await asyncio.sleep(5)
        return ModelReply(content="too late")


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.events: list[tuple[str, ChannelEvent]] = []

    async def publish(self, session_id: str, event: ChannelEvent) -> None:
        self.events.append((session_id, event))

    def names(self) -> list[str]:
        return [event.event_name for _, event in self.events]

    def of(self, name: str) -> list[ChannelEvent]:
        return [event for _, event in self.events if event.event_name == name]


class RecordingCallbacks:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    async def on_tool_start(self, call: ModelToolCall) -> None:
        self.calls.append(("tool_start", call.id))

    async def on_tool_progress(self, progress: ToolProgress) -> None:
        self.calls.append(("tool_progress", progress))

    async def on_tool_complete(self, call: ModelToolCall, result: Any, duration_ms: int) -> None:
        self.calls.append(("tool_complete", (call.id, result)))

    async def on_tool_error(self, call: ModelToolCall, error: str, duration_ms: int) -> None:
        self.calls.append(("tool_error", (call.id, error)))

    async def on_response_chunk(self, text: str) -> None:
        self.calls.append(("response_chunk", text))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]


def tool_call(call_id: str, query: str = "hours", name: str = "knowledge_qa") -> ModelToolCall:
    return ModelToolCall(id=call_id, name=name, arguments={"query": query})


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MessageStore]:
    message_store = MessageStore(tmp_path / "csva.db")
    yield message_store
    message_store.close()


@pytest.fixture
def knowledge(tmp_path: Path) -> KnowledgeBase:
    base = KnowledgeBase(tmp_path / "knowledge.db")
    base.add("Opening hours", "We are open 9 to 6, Tuesday to Saturday.", "hours")
    base.add("Refund policy", "Refunds are available within 30 days with a receipt.", "policies")
    return base


@pytest.fixture
def registry(knowledge: KnowledgeBase) -> ToolRegistry:
    tools = ToolRegistry()
    tools.register(create_knowledge_qa_tool(knowledge))
    return tools
