"""HTTP and WebSocket surface."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from csva import __version__
from csva.channels.events import ChannelEvent
from csva.errors import QueueError, SignatureError, StoreError
from csva.intake import IntakeResult, InvalidMessageError, new_id
from csva.message_store.service import Table
from csva.runtime import AppRuntime
from csva.signing import SIGNATURE_HEADER
from csva.speech import SpeechError
from csva.types import MessageRecord, ToolCallRecord, TurnJob


class ChatRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str | None = None
    message: str = ""
    turn_id: str | None = None


def row_payload(row: MessageRecord | ToolCallRecord) -> dict[str, Any]:
    return {to_camel(key): value for key, value in asdict(row).items()}


def event_frame(event: ChannelEvent) -> dict[str, Any]:
    return {"type": "event", "event": event.event_name, "payload": event.to_payload()}


def insert_frame(table: Table, row: MessageRecord | ToolCallRecord) -> dict[str, Any]:
    return {"type": "insert", "table": table, "row": row_payload(row)}


def create_app(runtime: AppRuntime) -> FastAPI:
    """Build the API around an already configured runtime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await runtime.start()
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="csva", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.post("/api/chat")
    async def chat(request: ChatRequest) -> JSONResponse:
        session_id = request.session_id or new_id()
        try:
            result = await runtime.intake.submit(request.message, session_id=session_id, turn_id=request.turn_id)
        except InvalidMessageError as exc:
            return _error(400, session_id, str(exc))
        except (StoreError, QueueError) as exc:
            logger.exception("api.chat.error session={}", session_id)
            return _error(500, session_id, f"Failed to queue message: {exc}")
        return JSONResponse(result.to_payload())

    @app.post("/api/voice/input")
    async def voice_input(
        request: Request,
        session_id: str | None = Query(None, alias="sessionId"),
        turn_id: str | None = Query(None, alias="turnId"),
    ) -> JSONResponse:
        """Transcribe a recorded utterance (raw audio body) and submit it like a typed message."""
        session_id = session_id or new_id()
        if runtime.transcriber is None:
            return _error(503, session_id, "Voice input is not configured")
        audio = await request.body()
        if not audio:
            return _error(400, session_id, "No audio provided")
        content_type = request.headers.get("content-type") or "audio/webm"
        try:
            transcript = await runtime.transcriber.transcribe(audio, content_type=content_type)
        except SpeechError as exc:
            logger.exception("api.voice.transcribe_error session={}", session_id)
            return _error(502, session_id, f"Transcription failed: {exc}")
        try:
            result = await runtime.intake.submit(transcript.text, session_id=session_id, turn_id=turn_id)
        except InvalidMessageError:
            return _error(422, session_id, "No speech detected")
        except (StoreError, QueueError) as exc:
            logger.exception("api.voice.error session={}", session_id)
            return _error(500, session_id, f"Failed to queue message: {exc}")
        return JSONResponse({**result.to_payload(), "transcript": transcript.text, "confidence": transcript.confidence})

    @app.post("/api/jobs/webhook", status_code=202)
    async def job_webhook(request: Request, background: BackgroundTasks) -> JSONResponse:
        body = (await request.body()).decode("utf-8")
        try:
            runtime.signer.verify(body, request.headers.get(SIGNATURE_HEADER))
        except SignatureError as exc:
            logger.warning("api.webhook.rejected reason={}", exc)
            return JSONResponse({"status": "error", "error": "Invalid signature"}, status_code=401)
        try:
            job = TurnJob.from_payload(json.loads(body))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return JSONResponse({"status": "error", "error": "Invalid job payload"}, status_code=400)
        background.add_task(runtime.worker.handle, job)
        return JSONResponse({"status": "accepted", "turnId": job.turn_id}, status_code=202)

    @app.get("/api/sessions/{session_id}/messages")
    async def session_messages(session_id: str) -> dict[str, Any]:
        return {
            "sessionId": session_id,
            "messages": [row_payload(row) for row in runtime.store.get_messages(session_id)],
            "toolCalls": [row_payload(row) for row in runtime.store.get_tool_calls(session_id)],
        }

    @app.websocket("/api/sessions/{session_id}/events")
    async def session_events(websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        frames: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        unsubscribers = [
            runtime.hub.subscribe(session_id, lambda event: frames.put_nowait(event_frame(event))),
            runtime.store.on_insert(session_id, lambda table, row: frames.put_nowait(insert_frame(table, row))),
        ]
        logger.info("api.ws.connected session={}", session_id)
        await websocket.send_json({"type": "ready", "sessionId": session_id})

        async def _forward() -> None:
            while True:
                await websocket.send_json(await frames.get())

        async def _receive() -> None:
            while True:
                if await websocket.receive_text() == "ping":
                    frames.put_nowait({"type": "pong"})

        tasks = {asyncio.create_task(_forward()), asyncio.create_task(_receive())}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.opt(exception=exc).error("api.ws.error session={}", session_id)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            logger.info("api.ws.disconnected session={}", session_id)

    return app


def _error(status_code: int, session_id: str, error: str) -> JSONResponse:
    result = IntakeResult(status="error", session_id=session_id, error=error)
    return JSONResponse(result.to_payload(), status_code=status_code)
