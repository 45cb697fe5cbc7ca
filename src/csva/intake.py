"""Intake: persist the user message, then enqueue the turn."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Literal

from loguru import logger

from csva.core.worker import assistant_message_id
from csva.errors import CsvaError, QueueError, StoreError
from csva.jobs import JobQueue
from csva.message_store.service import MessageStore, write_with_retry
from csva.types import MessageRecord, TurnJob


ENQUEUE_FAILURE_RESPONSE = "Sorry, I couldn't process your request right now. Please try again."


def new_id(size: int = 21) -> str:
    return secrets.token_urlsafe(size)[:size]


def user_message_id(session_id: str, turn_id: str) -> str:
    return f"usr_{session_id}_{turn_id}"


@dataclass(frozen=True)
class IntakeResult:
    status: Literal["queued", "error"]
    session_id: str
    turn_id: str | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, str]:
        payload = {"status": self.status, "sessionId": self.session_id}
        if self.turn_id is not None:
            payload["turnId"] = self.turn_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


class InvalidMessageError(CsvaError):
    """Raised when the submitted message is empty."""


class IntakeService:
    """Accepts user utterances.

    The user message is durably stored before the job is enqueued, so the
    worker's history always contains it. When enqueueing fails the turn is
    closed in the store with ``ENQUEUE_FAILURE_RESPONSE``: the user row is
    already visible to every client and must not stay unanswered.
    """

    def __init__(self, store: MessageStore, queue: JobQueue, *, persist_retries: int = 0) -> None:
        self._store = store
        self._queue = queue
        self._persist_retries = persist_retries

    async def submit(self, message: str, *, session_id: str | None = None, turn_id: str | None = None) -> IntakeResult:
        """Store and enqueue one user message.

        Raises:
            InvalidMessageError: If the message is blank
            StoreError: If the user message could not be stored
            QueueError: If the job could not be enqueued
        """
        session_id = session_id or new_id()
        text = message.strip()
        if not text:
            raise InvalidMessageError("Message is required")
        turn_id = turn_id or f"turn_{new_id()}"

        user_message = MessageRecord(
            id=user_message_id(session_id, turn_id),
            session_id=session_id,
            turn_id=turn_id,
            role="user",
            content=text,
        )
        self._store.add_message(user_message)

        job = TurnJob(session_id=session_id, message=text, turn_id=turn_id, timestamp=int(time.time() * 1000))
        try:
            await self._queue.enqueue(job)
        except Exception as exc:
            logger.warning("intake.enqueue.failed session={} turn={} error={}", session_id, turn_id, exc)
            self._close_turn(session_id, turn_id)
            if isinstance(exc, QueueError):
                raise
            raise QueueError(str(exc)) from exc
        logger.info("intake.queued session={} turn={}", session_id, turn_id)
        return IntakeResult(status="queued", session_id=session_id, turn_id=turn_id)

    def _close_turn(self, session_id: str, turn_id: str) -> None:
        # Same id the worker would use, so a job that did get through is skipped.
        reply = MessageRecord(
            id=assistant_message_id(session_id, turn_id),
            session_id=session_id,
            turn_id=turn_id,
            role="assistant",
            content=ENQUEUE_FAILURE_RESPONSE,
        )
        write_with_retry(
            lambda: self._store.add_message(reply),
            what=f"enqueue_failure:{turn_id}",
            retries=self._persist_retries,
        )


__all__ = [
    "ENQUEUE_FAILURE_RESPONSE",
    "IntakeResult",
    "IntakeService",
    "InvalidMessageError",
    "StoreError",
    "new_id",
    "user_message_id",
]
