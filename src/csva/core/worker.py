"""Orchestration job consumer."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

from loguru import logger

from csva.channels.bus import Broadcaster
from csva.channels.events import (
    ProcessingStarted,
    ResponseChunk,
    ResponseDone,
    ToolCompleted,
    ToolFailed,
    ToolProgressed,
    ToolStarted,
)
from csva.core.orchestrator import OrchestrationResult, Orchestrator
from csva.core.progress import ToolProgress
from csva.errors import StoreError
from csva.llm import ModelToolCall
from csva.logging_utils import turn_context
from csva.message_store.service import MessageStore, write_with_retry
from csva.speech import AudioStreamer
from csva.types import MessageRecord, TurnJob

_ASSISTANT_ID_NAMESPACE = uuid.UUID("5b0d7e8e-3c1f-4c7a-9f51-6f6c2a8f0e11")


def assistant_message_id(session_id: str, turn_id: str) -> str:
    """Id of the assistant message of a turn, known before the message exists."""
    key = f"{session_id}/{turn_id}"
    return f"msg_{uuid.uuid5(_ASSISTANT_ID_NAMESPACE, key).hex}"


class ContextRetriever(Protocol):
    def render_context(self, query: str, *, limit: int = 3) -> str | None: ...


@dataclass(frozen=True)
class TurnOutcome:
    turn_id: str
    message_id: str
    result: OrchestrationResult | None
    skipped: bool = False


class BroadcastCallbacks:
    """Loop callbacks that publish each lifecycle step on the session topic."""

    def __init__(self, broadcaster: Broadcaster, *, session_id: str, turn_id: str, message_id: str) -> None:
        self._broadcaster = broadcaster
        self._session_id = session_id
        self._turn_id = turn_id
        self._message_id = message_id

    async def on_tool_start(self, call: ModelToolCall) -> None:
        logger.info("turn.tool.start name={} call_id={}", call.name, call.id)
        await self._broadcaster.publish(
            self._session_id,
            ToolStarted(turn_id=self._turn_id, tool_name=call.name, tool_call_id=call.id, message_id=self._message_id),
        )

    async def on_tool_progress(self, progress: ToolProgress) -> None:
        await self._broadcaster.publish(
            self._session_id,
            ToolProgressed(
                turn_id=self._turn_id,
                tool_name=progress.tool_name,
                tool_call_id=progress.tool_call_id,
                progress=progress.progress,
                message=progress.message,
            ),
        )

    async def on_tool_complete(self, call: ModelToolCall, result: Any, duration_ms: int) -> None:
        logger.info("turn.tool.complete name={} call_id={} duration_ms={}", call.name, call.id, duration_ms)
        await self._broadcaster.publish(
            self._session_id,
            ToolCompleted(turn_id=self._turn_id, tool_name=call.name, tool_call_id=call.id, result=result),
        )

    async def on_tool_error(self, call: ModelToolCall, error: str, duration_ms: int) -> None:
        logger.warning("turn.tool.error name={} call_id={} error={}", call.name, call.id, error)
        await self._broadcaster.publish(
            self._session_id,
            ToolFailed(turn_id=self._turn_id, tool_name=call.name, tool_call_id=call.id, error=error),
        )

    async def on_response_chunk(self, text: str) -> None:
        await self._broadcaster.publish(self._session_id, ResponseChunk(turn_id=self._turn_id, text=text))


class TurnWorker:
    """Runs one queued turn end to end.

    Order of effects: ``processing:started``, the loop (tool events and
    tool-call records), the assistant message insert, ``response:done``,
    then optional speech frames. A job whose assistant message already
    exists is a redelivery and is skipped.
    """

    def __init__(
        self,
        *,
        store: MessageStore,
        broadcaster: Broadcaster,
        orchestrator: Orchestrator,
        retriever: ContextRetriever | None = None,
        speech: AudioStreamer | None = None,
        context_results: int = 3,
        persist_retries: int = 0,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._orchestrator = orchestrator
        self._retriever = retriever
        self._speech = speech
        self._context_results = context_results
        self._persist_retries = persist_retries

    async def handle(self, job: TurnJob) -> TurnOutcome:
        message_id = assistant_message_id(job.session_id, job.turn_id)
        with turn_context(job.turn_id):
            if self._already_answered(job):
                logger.info("turn.skip reason=already_answered session={}", job.session_id)
                return TurnOutcome(turn_id=job.turn_id, message_id=message_id, result=None, skipped=True)

            logger.info("turn.start session={}", job.session_id)
            await self._broadcaster.publish(
                job.session_id,
                ProcessingStarted(turn_id=job.turn_id, timestamp=int(time.time() * 1000)),
            )
            callbacks = BroadcastCallbacks(
                self._broadcaster, session_id=job.session_id, turn_id=job.turn_id, message_id=message_id
            )
            result = await self._orchestrator.run(
                session_id=job.session_id,
                history=self._load_history(job),
                callbacks=callbacks,
                context=self._retrieve_context(job.message),
                message_id=message_id,
            )

            assistant = MessageRecord(
                id=message_id,
                session_id=job.session_id,
                turn_id=job.turn_id,
                role="assistant",
                content=result.content,
                tool_calls=result.tool_call_ids or None,
            )
            write_with_retry(
                lambda: self._store.add_message(assistant),
                what=f"assistant_message:{message_id}",
                retries=self._persist_retries,
            )
            await self._broadcaster.publish(job.session_id, ResponseDone(turn_id=job.turn_id, message_id=message_id))
            logger.info(
                "turn.done steps={} tools={} error={}", result.steps, len(result.tool_call_ids), result.error
            )

            if self._speech is not None and result.content:
                await self._speak(self._speech, job, result.content)
            return TurnOutcome(turn_id=job.turn_id, message_id=message_id, result=result)

    def _already_answered(self, job: TurnJob) -> bool:
        try:
            return self._store.get_assistant_message(job.session_id, job.turn_id) is not None
        except StoreError:
            logger.exception("turn.idempotency_check.error")
            return False

    def _load_history(self, job: TurnJob) -> list[MessageRecord]:
        try:
            history = self._store.get_messages(job.session_id)
        except StoreError:
            logger.exception("turn.history.error session={}", job.session_id)
            history = []
        if not any(message.turn_id == job.turn_id and message.role == "user" for message in history):
            history.append(
                MessageRecord(
                    id=f"job_{job.turn_id}",
                    session_id=job.session_id,
                    turn_id=job.turn_id,
                    role="user",
                    content=job.message,
                )
            )
        return history

    def _retrieve_context(self, query: str) -> str | None:
        if self._retriever is None:
            return None
        try:
            return self._retriever.render_context(query, limit=self._context_results)
        except StoreError:
            logger.exception("turn.context.error")
            return None

    async def _speak(self, speech: AudioStreamer, job: TurnJob, text: str) -> None:
        try:
            await speech.stream(job.session_id, job.turn_id, text)
        except Exception:
            logger.exception("turn.speech.error")
