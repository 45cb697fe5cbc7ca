"""Iterative LLM tool-calling loop."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from csva.core.progress import ProgressChannel, ToolProgress
from csva.core.prompt import build_transcript
from csva.errors import ModelCallError
from csva.llm import ChatMessage, ChatModel, ModelReply, ModelToolCall
from csva.message_store.service import MessageStore, write_with_retry
from csva.tools.registry import ToolRegistry
from csva.types import MessageRecord, ToolCallRecord, ToolStatus

FALLBACK_RESPONSE = "Sorry, I encountered an error processing your request."
MAX_STEPS_RESPONSE = "Sorry, I couldn't finish working on that request. Could you try asking in a simpler way?"


class TurnCallbacks(Protocol):
    """Lifecycle hooks invoked in the order the loop reaches each event."""

    async def on_tool_start(self, call: ModelToolCall) -> None: ...

    async def on_tool_progress(self, progress: ToolProgress) -> None: ...

    async def on_tool_complete(self, call: ModelToolCall, result: Any, duration_ms: int) -> None: ...

    async def on_tool_error(self, call: ModelToolCall, error: str, duration_ms: int) -> None: ...

    async def on_response_chunk(self, text: str) -> None: ...


@dataclass(frozen=True)
class OrchestrationResult:
    """Outcome of one turn's loop."""

    content: str
    steps: int
    tool_call_ids: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class _LoopState:
    transcript: list[ChatMessage]
    step: int = 0
    tool_call_ids: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class _ToolOutcome:
    result: Any
    status: ToolStatus
    duration_ms: int
    error: str | None = None


class Orchestrator:
    """Drives ask model, run requested tools, feed results back, until a final answer.

    Tool calls of one model reply run sequentially in the order returned.
    Every executed call produces exactly one tool-call record.
    """

    def __init__(
        self,
        *,
        model: ChatModel,
        tools: ToolRegistry,
        store: MessageStore,
        max_iterations: int,
        model_timeout_seconds: float | None = None,
        tool_timeout_seconds: float | None = None,
        system_prompt: str | None = None,
        persist_retries: int = 0,
    ) -> None:
        self._model = model
        self._tools = tools
        self._store = store
        self._max_iterations = max_iterations
        self._model_timeout_seconds = model_timeout_seconds
        self._tool_timeout_seconds = tool_timeout_seconds
        self._system_prompt = system_prompt
        self._persist_retries = persist_retries

    async def run(
        self,
        *,
        session_id: str,
        history: list[MessageRecord],
        callbacks: TurnCallbacks,
        context: str | None = None,
        message_id: str | None = None,
    ) -> OrchestrationResult:
        state = _LoopState(
            transcript=build_transcript(history, system_prompt=self._system_prompt, context=context),
        )
        schemas = self._tools.model_tools()

        while state.step < self._max_iterations:
            state.step += 1
            logger.info("orchestrator.step step={} messages={}", state.step, len(state.transcript))
            try:
                reply = await self._chat(state.transcript, schemas)
            except ModelCallError as exc:
                state.error = str(exc)
                return await self._finish(state, FALLBACK_RESPONSE, callbacks)

            if not reply.tool_calls:
                return await self._finish(state, reply.content, callbacks)

            state.transcript.append(reply.to_message())
            for call in reply.tool_calls:
                outcome = await self._run_tool(call, callbacks)
                self._persist_tool_call(session_id, message_id, call, outcome)
                state.tool_call_ids.append(call.id)
                state.transcript.append(_tool_result_message(call, outcome))

        state.error = f"max_iterations_reached={self._max_iterations}"
        logger.warning("orchestrator.max_iterations max={}", self._max_iterations)
        return await self._finish(state, MAX_STEPS_RESPONSE, callbacks)

    async def _finish(self, state: _LoopState, content: str, callbacks: TurnCallbacks) -> OrchestrationResult:
        # The model backend does not stream tokens: one chunk carries the whole answer.
        if content:
            await callbacks.on_response_chunk(content)
        return OrchestrationResult(
            content=content,
            steps=state.step,
            tool_call_ids=list(state.tool_call_ids),
            error=state.error,
        )

    async def _chat(self, transcript: list[ChatMessage], schemas: list[dict[str, Any]]) -> ModelReply:
        try:
            async with asyncio.timeout(self._model_timeout_seconds):
                return await self._model.complete(list(transcript), schemas)
        except TimeoutError as exc:
            logger.warning("model.call.timeout seconds={}", self._model_timeout_seconds)
            raise ModelCallError(f"model_timeout: no response within {self._model_timeout_seconds}s") from exc
        except Exception as exc:
            logger.exception("model.call.error")
            if isinstance(exc, ModelCallError):
                raise
            raise ModelCallError(str(exc) or type(exc).__name__) from exc

    async def _run_tool(self, call: ModelToolCall, callbacks: TurnCallbacks) -> _ToolOutcome:
        await callbacks.on_tool_start(call)
        channel = ProgressChannel(call.id, call.name)
        start = time.monotonic()
        task = asyncio.create_task(self._execute(call, channel))
        try:
            async for progress in channel:
                await callbacks.on_tool_progress(progress)
        finally:
            if not task.done():
                task.cancel()
        result, error = await task
        duration_ms = int((time.monotonic() - start) * 1000)

        if error is not None:
            await callbacks.on_tool_error(call, error, duration_ms)
            return _ToolOutcome(result={"error": error}, status=ToolStatus.ERROR, duration_ms=duration_ms, error=error)
        await callbacks.on_tool_complete(call, result, duration_ms)
        return _ToolOutcome(result=result, status=ToolStatus.COMPLETED, duration_ms=duration_ms)

    async def _execute(self, call: ModelToolCall, channel: ProgressChannel) -> tuple[Any, str | None]:
        try:
            async with asyncio.timeout(self._tool_timeout_seconds):
                return await self._tools.execute(call.name, call.arguments, channel.report), None
        except TimeoutError:
            return None, f"tool_timeout: {call.name} did not finish within {self._tool_timeout_seconds}s"
        except Exception as exc:
            return None, str(exc) or type(exc).__name__
        finally:
            channel.close()

    def _persist_tool_call(
        self, session_id: str, message_id: str | None, call: ModelToolCall, outcome: _ToolOutcome
    ) -> None:
        record = ToolCallRecord(
            id=call.id,
            tool_call_id=call.id,
            session_id=session_id,
            message_id=message_id,
            tool_name=call.name,
            input=call.arguments,
            output=_as_output(outcome.result),
            status=outcome.status.value,
            duration_ms=outcome.duration_ms,
        )
        write_with_retry(
            lambda: self._store.add_tool_call(record),
            what=f"tool_call:{call.id}",
            retries=self._persist_retries,
        )


def _as_output(result: Any) -> dict[str, Any]:
    if isinstance(result, dict):
        return result
    return {"result": result}


def _tool_result_message(call: ModelToolCall, outcome: _ToolOutcome) -> ChatMessage:
    return {
        "role": "tool",
        "tool_call_id": call.id,
        "content": json.dumps(outcome.result, ensure_ascii=False, default=str),
    }
