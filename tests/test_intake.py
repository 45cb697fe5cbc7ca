from __future__ import annotations

import pytest

from csva.errors import QueueError
from csva.core.worker import assistant_message_id
from csva.intake import ENQUEUE_FAILURE_RESPONSE, IntakeService, InvalidMessageError, user_message_id
from csva.message_store.service import MessageStore
from csva.types import TurnJob


class _CheckingQueue:
    """Records, at enqueue time, what the store already holds."""

    def __init__(self, store: MessageStore) -> None:
        self.store = store
        self.jobs: list[TurnJob] = []
        self.stored_at_enqueue: list[list[str]] = []

    async def enqueue(self, job: TurnJob) -> None:
        self.stored_at_enqueue.append([message.content for message in self.store.get_messages(job.session_id)])
        self.jobs.append(job)


class _FailingQueue:
    async def enqueue(self, job: TurnJob) -> None:
        raise ConnectionError("queue down")


@pytest.mark.asyncio
async def test_user_message_is_stored_before_the_job_is_enqueued(store: MessageStore) -> None:
    queue = _CheckingQueue(store)

    result = await IntakeService(store, queue).submit("  What are your hours?  ", session_id="s1", turn_id="turn_1")

    assert result.to_payload() == {"status": "queued", "sessionId": "s1", "turnId": "turn_1"}
    assert queue.stored_at_enqueue == [["What are your hours?"]]
    assert store.get_messages("s1")[0].id == user_message_id("s1", "turn_1")
    job = queue.jobs[0]
    assert (job.session_id, job.turn_id, job.message) == ("s1", "turn_1", "What are your hours?")
    assert job.timestamp > 0


@pytest.mark.asyncio
async def test_missing_ids_are_generated(store: MessageStore) -> None:
    queue = _CheckingQueue(store)

    first = await IntakeService(store, queue).submit("hi")
    second = await IntakeService(store, queue).submit("hi again")

    assert first.session_id and second.session_id and first.session_id != second.session_id
    assert first.turn_id and first.turn_id.startswith("turn_")
    assert first.turn_id != second.turn_id


@pytest.mark.asyncio
async def test_blank_message_is_rejected_without_side_effects(store: MessageStore) -> None:
    queue = _CheckingQueue(store)

    with pytest.raises(InvalidMessageError):
        await IntakeService(store, queue).submit(" \n ", session_id="s1")

    assert queue.jobs == []
    assert store.get_messages("s1") == []


@pytest.mark.asyncio
async def test_queue_failure_is_wrapped_and_closes_the_turn(store: MessageStore) -> None:
    with pytest.raises(QueueError, match="queue down"):
        await IntakeService(store, _FailingQueue()).submit("hello", session_id="s1", turn_id="turn_1")

    messages = store.get_messages("s1")
    assert [(message.role, message.content) for message in messages] == [
        ("user", "hello"),
        ("assistant", ENQUEUE_FAILURE_RESPONSE),
    ]
    assert messages[1].id == assistant_message_id("s1", "turn_1")
    assert messages[1].turn_id == "turn_1"


@pytest.mark.asyncio
async def test_same_turn_id_in_two_sessions_is_stored_twice(store: MessageStore) -> None:
    queue = _CheckingQueue(store)
    intake = IntakeService(store, queue)

    await intake.submit("hi", session_id="s1", turn_id="turn_1")
    await intake.submit("hi", session_id="s2", turn_id="turn_1")

    assert [message.content for message in store.get_messages("s2")] == ["hi"]
