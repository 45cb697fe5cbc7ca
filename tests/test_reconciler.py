from __future__ import annotations

from typing import Any

from csva.channels.events import (
    ChannelEvent,
    ProcessingStarted,
    ResponseChunk,
    ResponseDone,
    ToolCompleted,
    ToolFailed,
    ToolProgressed,
    ToolStarted,
)
from csva.reconcile.engine import TurnReconciler
from csva.types import MessageRecord, ToolCallRecord, ToolStatus, TurnStatus

SESSION = "s1"
T0 = "2025-01-01T10:00:00+00:00"
T1 = "2025-01-01T10:00:05+00:00"


def _user_row(turn_id: str = "turn_1", text: str = "What are your hours?", created_at: str = T0) -> MessageRecord:
    return MessageRecord(
        id=f"usr_{turn_id}", session_id=SESSION, turn_id=turn_id, role="user", content=text, created_at=created_at
    )


def _assistant_row(turn_id: str = "turn_1", text: str = "We're open.", tool_calls: list[str] | None = None) -> MessageRecord:
    return MessageRecord(
        id=f"msg_{turn_id}",
        session_id=SESSION,
        turn_id=turn_id,
        role="assistant",
        content=text,
        tool_calls=tool_calls,
        created_at=T1,
    )


def _tool_row(call_id: str = "call_1", turn_id: str = "turn_1", status: str = "completed") -> ToolCallRecord:
    return ToolCallRecord(
        id=call_id,
        tool_call_id=call_id,
        session_id=SESSION,
        tool_name="knowledge_qa",
        input={"query": "hours"},
        output={"message": "Found 1 relevant entries."},
        status=status,
        duration_ms=42,
        message_id=f"msg_{turn_id}",
        created_at=T1,
    )


def _tool_events(turn_id: str = "turn_1", call_id: str = "call_1") -> list[ChannelEvent]:
    return [
        ToolStarted(turn_id=turn_id, tool_name="knowledge_qa", tool_call_id=call_id, message_id=f"msg_{turn_id}"),
        ToolProgressed(turn_id=turn_id, tool_name="knowledge_qa", tool_call_id=call_id, progress=10, message="Searching"),
        ToolProgressed(turn_id=turn_id, tool_name="knowledge_qa", tool_call_id=call_id, progress=90, message="Preparing"),
        ToolCompleted(turn_id=turn_id, tool_name="knowledge_qa", tool_call_id=call_id, result={"ok": True}),
    ]


def _turn_events(turn_id: str = "turn_1", text: str = "We're open.") -> list[ChannelEvent]:
    return [
        ProcessingStarted(turn_id=turn_id, timestamp=1_735_725_600_000),
        *_tool_events(turn_id),
        ResponseChunk(turn_id=turn_id, text=text),
        ResponseDone(turn_id=turn_id, message_id=f"msg_{turn_id}"),
    ]


def _apply(reconciler: TurnReconciler, items: list[Any]) -> None:
    for item in items:
        if isinstance(item, ChannelEvent):
            reconciler.apply_event(item)
        elif isinstance(item, MessageRecord):
            reconciler.apply_message_row(item)
        else:
            reconciler.apply_tool_call_row(item)


def test_live_events_drive_the_active_turn_forward() -> None:
    reconciler = TurnReconciler(SESSION)
    reconciler.add_local_message("turn_1", "What are your hours?")

    reconciler.apply_event(ProcessingStarted(turn_id="turn_1", timestamp=1))
    turn = reconciler.active_turn
    assert turn is not None and turn.status is TurnStatus.PENDING
    assert turn.user_query == "What are your hours?"

    events = _tool_events()
    reconciler.apply_event(events[0])
    assert turn.status is TurnStatus.TOOLS_RUNNING
    invocation = turn.invocation("call_1")
    assert invocation is not None
    assert invocation.status is ToolStatus.RUNNING and invocation.progress == 0

    reconciler.apply_event(events[1])
    assert invocation.progress == 10 and invocation.progress_message == "Searching"
    assert turn.status is TurnStatus.TOOLS_RUNNING

    reconciler.apply_event(events[3])
    assert invocation.status is ToolStatus.COMPLETED and invocation.progress == 100

    reconciler.apply_event(ResponseChunk(turn_id="turn_1", text="We're "))
    reconciler.apply_event(ResponseChunk(turn_id="turn_1", text="open."))
    assert turn.status is TurnStatus.RESPONDING
    assert turn.streaming_response == "We're open."


def test_progress_never_decreases_and_ends_at_100() -> None:
    reconciler = TurnReconciler(SESSION)
    reconciler.apply_event(ProcessingStarted(turn_id="turn_1", timestamp=1))
    started, *_ = _tool_events()
    reconciler.apply_event(started)
    turn = reconciler.turn("turn_1")
    assert turn is not None
    invocation = turn.invocation("call_1")
    assert invocation is not None

    observed = []
    for value in (30, 20, 60, 60, 50):
        reconciler.apply_event(
            ToolProgressed(turn_id="turn_1", tool_name="knowledge_qa", tool_call_id="call_1", progress=value)
        )
        observed.append(invocation.progress)
    reconciler.apply_event(ToolCompleted(turn_id="turn_1", tool_name="knowledge_qa", tool_call_id="call_1"))
    observed.append(invocation.progress)
    reconciler.apply_event(ToolProgressed(turn_id="turn_1", tool_name="knowledge_qa", tool_call_id="call_1", progress=5))
    observed.append(invocation.progress)

    assert observed == sorted(observed)
    assert observed[-1] == 100
    assert invocation.status is ToolStatus.COMPLETED


def test_response_done_alone_does_not_complete_the_turn() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, [_user_row(), *_turn_events()])

    turn = reconciler.turn("turn_1")
    assert turn is not None
    assert turn.status is not TurnStatus.COMPLETE
    assert turn.assistant_response is None
    assert reconciler.busy

    reconciler.apply_message_row(_assistant_row(tool_calls=["call_1"]))

    turn = reconciler.turn("turn_1")
    assert turn is not None
    assert turn.status is TurnStatus.COMPLETE
    assert turn.assistant_response == "We're open."
    assert not reconciler.busy
    assert reconciler.active_turn is None
    assert [item.turn_id for item in reconciler.history] == ["turn_1"]


def test_chunks_after_response_done_are_ignored() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, _turn_events())

    assert not reconciler.apply_event(ResponseChunk(turn_id="turn_1", text=" extra"))
    turn = reconciler.turn("turn_1")
    assert turn is not None and turn.streaming_response == "We're open."


def test_store_rows_are_idempotent() -> None:
    once = TurnReconciler(SESSION)
    twice = TurnReconciler(SESSION)
    rows: list[Any] = [_user_row(), _tool_row(), _assistant_row(tool_calls=["call_1"])]

    _apply(once, [*_turn_events()[:5], *rows])
    _apply(twice, [*_turn_events()[:5], *rows, *rows])

    assert not twice.apply_message_row(_assistant_row(tool_calls=["call_1"]))
    assert not twice.apply_tool_call_row(_tool_row())
    assert once.history == twice.history
    assert once.messages == twice.messages
    assert len(twice.messages) == 2


def test_store_rows_before_or_after_broadcast_converge() -> None:
    events = _turn_events()
    tool_row = _tool_row()

    rows_first = TurnReconciler(SESSION)
    _apply(rows_first, [_user_row(), tool_row, *events])

    rows_last = TurnReconciler(SESSION)
    _apply(rows_last, [_user_row(), *events, tool_row])

    rows_between = TurnReconciler(SESSION)
    _apply(rows_between, [_user_row(), *events[:2], tool_row, *events[2:]])

    assert rows_first.turn("turn_1") == rows_last.turn("turn_1") == rows_between.turn("turn_1")

    for reconciler in (rows_first, rows_last, rows_between):
        reconciler.apply_message_row(_assistant_row(tool_calls=["call_1"]))
    assert rows_first.turn("turn_1") == rows_last.turn("turn_1") == rows_between.turn("turn_1")


def test_late_tool_row_enriches_completed_invocation() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, [ProcessingStarted(turn_id="turn_1", timestamp=1), *_tool_events()])
    turn = reconciler.turn("turn_1")
    assert turn is not None
    invocation = turn.invocation("call_1")
    assert invocation is not None
    assert invocation.output is None and invocation.duration_ms is None

    reconciler.apply_tool_call_row(_tool_row())

    assert invocation.output == {"message": "Found 1 relevant entries."}
    assert invocation.duration_ms == 42
    assert invocation.input == {"query": "hours"}
    assert invocation.status is ToolStatus.COMPLETED
    assert invocation.progress == 100


def test_second_turn_does_not_touch_the_first() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, [_user_row("turn_1"), ProcessingStarted(turn_id="turn_1", timestamp=1)])
    _apply(reconciler, _tool_events("turn_1", "call_1"))
    reconciler.apply_event(ResponseChunk(turn_id="turn_1", text="Partial"))

    reconciler.apply_event(ProcessingStarted(turn_id="turn_2", timestamp=2))
    _apply(reconciler, _tool_events("turn_2", "call_2"))

    first = reconciler.turn("turn_1")
    second = reconciler.turn("turn_2")
    assert first is not None and second is not None
    assert [invocation.id for invocation in first.tool_invocations] == ["call_1"]
    assert [invocation.id for invocation in second.tool_invocations] == ["call_2"]
    assert first.status is TurnStatus.RESPONDING
    assert reconciler.active_turn is second

    reconciler.apply_message_row(_assistant_row("turn_1", "Done one.", ["call_1"]))
    assert [turn.turn_id for turn in reconciler.history] == ["turn_1"]
    assert reconciler.history[0].assistant_response == "Done one."
    assert [turn.turn_id for turn in reconciler.active_turns] == ["turn_2"]


def test_events_for_untracked_or_committed_turns_are_ignored() -> None:
    reconciler = TurnReconciler(SESSION)

    assert not reconciler.apply_event(_tool_events("ghost")[0])
    assert reconciler.turn("ghost") is None

    _apply(reconciler, [_user_row(), *_turn_events(), _assistant_row(tool_calls=["call_1"])])
    before = reconciler.turn("turn_1")
    assert not reconciler.apply_event(ProcessingStarted(turn_id="turn_1", timestamp=5))
    assert not reconciler.apply_event(ResponseChunk(turn_id="turn_1", text="late"))
    assert reconciler.turn("turn_1") == before
    assert reconciler.active_turn is None


def test_processing_started_does_not_regress_a_turn() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, [ProcessingStarted(turn_id="turn_1", timestamp=1), _tool_events()[0]])

    reconciler.apply_event(ProcessingStarted(turn_id="turn_1", timestamp=1))

    turn = reconciler.turn("turn_1")
    assert turn is not None
    assert turn.status is TurnStatus.TOOLS_RUNNING
    assert len(turn.tool_invocations) == 1


def test_stored_user_row_replaces_the_optimistic_copy() -> None:
    reconciler = TurnReconciler(SESSION)
    reconciler.add_local_message("turn_1", "What are your hours?")
    row = _user_row()

    assert reconciler.apply_message_row(row)
    assert not reconciler.apply_message_row(row)

    assert reconciler.messages == [row]
    turn = reconciler.turn("turn_1")
    assert turn is not None
    assert (turn.user_query, turn.created_at) == (row.content, row.created_at)
    assert reconciler.busy
    # The store owns the turn now; a late rollback must not drop it.
    assert not reconciler.discard_local_message("turn_1")
    assert reconciler.messages == [row]


def test_discarding_a_failed_submission() -> None:
    reconciler = TurnReconciler(SESSION)
    reconciler.add_local_message("turn_1", "hello")

    assert reconciler.discard_local_message("turn_1")

    assert reconciler.turn("turn_1") is None
    assert reconciler.messages == []
    assert not reconciler.busy
    assert not reconciler.discard_local_message("turn_1")


def test_failed_tool_event_marks_invocation_error() -> None:
    reconciler = TurnReconciler(SESSION)
    _apply(reconciler, [ProcessingStarted(turn_id="turn_1", timestamp=1), _tool_events()[0]])

    reconciler.apply_event(
        ToolFailed(turn_id="turn_1", tool_name="knowledge_qa", tool_call_id="call_1", error="service down")
    )

    turn = reconciler.turn("turn_1")
    assert turn is not None
    invocation = turn.invocation("call_1")
    assert invocation is not None
    assert invocation.status is ToolStatus.ERROR
    assert invocation.error == "service down"


def test_history_load_for_a_late_joiner() -> None:
    reconciler = TurnReconciler(SESSION)
    reconciler.load_history(
        [
            _user_row("turn_1", created_at=T0),
            _assistant_row("turn_1", "Open 9 to 6.", ["call_1"]),
            _user_row("turn_2", "And on Sunday?", created_at="2025-01-01T10:01:00+00:00"),
        ],
        [_tool_row("call_1")],
    )

    assert [turn.turn_id for turn in reconciler.history] == ["turn_1"]
    historical = reconciler.history[0]
    assert historical.user_query == "What are your hours?"
    assert historical.tool_invocations[0].output == {"message": "Found 1 relevant entries."}
    assert historical.tool_invocations[0].status is ToolStatus.COMPLETED
    assert historical.tool_invocations[0].progress == 100

    in_flight = reconciler.active_turn
    assert in_flight is not None and in_flight.turn_id == "turn_2"
    assert in_flight.user_query == "And on Sunday?"
    assert reconciler.apply_event(ResponseChunk(turn_id="turn_2", text="Closed."))


def test_rows_of_other_sessions_are_ignored() -> None:
    reconciler = TurnReconciler(SESSION)
    foreign = MessageRecord(id="x", session_id="other", turn_id="turn_9", role="user", content="hi")

    assert not reconciler.apply_message_row(foreign)
    assert reconciler.messages == []


def test_signals_fire_on_start_and_commit() -> None:
    reconciler = TurnReconciler(SESSION)
    started: list[str] = []
    committed: list[str] = []
    reconciler.turn_started.connect(lambda sender, turn: started.append(turn.turn_id), weak=False)
    reconciler.turn_committed.connect(lambda sender, turn: committed.append(turn.turn_id), weak=False)

    _apply(reconciler, [*_turn_events(), _assistant_row(tool_calls=["call_1"]), _assistant_row(tool_calls=["call_1"])])

    assert started == ["turn_1"]
    assert committed == ["turn_1"]
