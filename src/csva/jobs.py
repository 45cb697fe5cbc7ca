"""Job queues carrying turns from intake to the orchestration worker."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Protocol

import httpx
from loguru import logger

from csva.errors import QueueError
from csva.signing import SIGNATURE_HEADER, WebhookSigner
from csva.types import TurnJob

JobHandler = Callable[[TurnJob], Awaitable[object]]
DEFAULT_RETRY_DELAYS = (1.0, 5.0, 15.0)


class JobQueue(Protocol):
    async def enqueue(self, job: TurnJob) -> None: ...


class LocalJobQueue:
    """In-process queue: one background task feeds jobs to the handler in order."""

    def __init__(self, handler: JobHandler) -> None:
        self._handler = handler
        self._queue: asyncio.Queue[TurnJob] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def enqueue(self, job: TurnJob) -> None:
        await self._queue.put(job)

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await self._handler(job)
            except Exception:
                logger.exception("jobs.local.error turn={}", job.turn_id)
            finally:
                self._queue.task_done()


class HttpJobQueue:
    """Delivers each job as a signed JSON POST to the job consumer webhook.

    Delivery is retried on transport errors and 5xx responses; 4xx
    responses are not retried.
    """

    def __init__(
        self,
        url: str,
        signer: WebhookSigner,
        *,
        client: httpx.AsyncClient | None = None,
        retries: int = 3,
        retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS,
    ) -> None:
        self._url = url
        self._signer = signer
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._retries = retries
        self._retry_delays = retry_delays

    async def enqueue(self, job: TurnJob) -> None:
        body = json.dumps(job.to_payload(), separators=(",", ":"))
        last_error = "no attempt made"
        for attempt in range(1, self._retries + 2):
            headers = {"Content-Type": "application/json", SIGNATURE_HEADER: self._signer.sign(body)}
            try:
                response = await self._client.post(self._url, content=body, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc) or type(exc).__name__
            else:
                if response.status_code < 400:
                    logger.info("jobs.http.delivered turn={} attempt={}", job.turn_id, attempt)
                    return
                last_error = f"http {response.status_code}"
                if response.status_code < 500:
                    break
            if attempt <= self._retries:
                delay = self._retry_delays[min(attempt - 1, len(self._retry_delays) - 1)] if self._retry_delays else 0
                logger.warning("jobs.http.retry turn={} attempt={} error={}", job.turn_id, attempt, last_error)
                await asyncio.sleep(delay)
        raise QueueError(f"job delivery failed for turn {job.turn_id}: {last_error}")

    async def aclose(self) -> None:
        await self._client.aclose()
