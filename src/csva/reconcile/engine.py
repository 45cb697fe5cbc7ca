"""Turn reconciliation: one converged view from three input streams.

A client sees (1) its own optimistic input, (2) live broadcast events
and (3) store-insert notifications. Broadcast is a preview and the store
is the commit: a turn becomes ``complete`` only when its assistant
message row is observed, and every mutation is keyed by id so that
replays are no-ops and the two streams may interleave in any order.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

from blinker import Signal
from loguru import logger

from csva.channels.events import (
    AudioChunk,
    ChannelEvent,
    ProcessingStarted,
    ResponseChunk,
    ResponseDone,
    ToolCompleted,
    ToolFailed,
    ToolProgressed,
    ToolStarted,
)
from csva.types import MessageRecord, ToolCallRecord, ToolInvocation, ToolStatus, Turn, TurnStatus, utc_now


class TurnReconciler:
    """Instance-scoped reconciliation state for one client connection.

    Signals (sender is the reconciler, keyword ``turn``):

    - ``turn_started``: a ``processing:started`` event began tracking a turn.
    - ``turn_committed``: the assistant message row of a turn was observed.
    - ``changed``: any visible state changed.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.turn_started = Signal()
        self.turn_committed = Signal()
        self.changed = Signal()

        self._active: dict[str, Turn] = {}
        self._message_ids: set[str] = set()
        self._user_messages: dict[str, MessageRecord] = {}
        self._assistant_messages: dict[str, MessageRecord] = {}
        self._optimistic: set[str] = set()
        self._tool_row_ids: set[str] = set()
        self._tool_rows: dict[str, ToolCallRecord] = {}
        self._frozen: set[str] = set()
        self._snapshots: dict[str, Turn] = {}

    # Views

    @property
    def active_turns(self) -> list[Turn]:
        return list(self._active.values())

    @property
    def active_turn(self) -> Turn | None:
        """The most recently started turn that has not been committed."""
        if not self._active:
            return None
        return next(reversed(self._active.values()))

    @property
    def busy(self) -> bool:
        return bool(self._active)

    @property
    def history(self) -> list[Turn]:
        """Committed turns, oldest first, built from store rows."""
        committed = sorted(self._assistant_messages, key=self._turn_sort_key)
        return [self._historical_turn(turn_id) for turn_id in committed]

    @property
    def messages(self) -> list[MessageRecord]:
        records = [*self._user_messages.values(), *self._assistant_messages.values()]
        return sorted(records, key=lambda record: (record.created_at, record.role != "user"))

    def turn(self, turn_id: str) -> Turn | None:
        if turn_id in self._active:
            return self._active[turn_id]
        if turn_id in self._assistant_messages:
            return self._historical_turn(turn_id)
        return None

    def is_committed(self, turn_id: str) -> bool:
        return turn_id in self._assistant_messages

    # Optimistic input

    def add_local_message(self, turn_id: str, text: str) -> Turn:
        """Show the user's utterance before the store has it."""
        if turn_id not in self._user_messages:
            record = MessageRecord(
                id=f"local_{turn_id}",
                session_id=self.session_id,
                turn_id=turn_id,
                role="user",
                content=text,
            )
            self._user_messages[turn_id] = record
            self._message_ids.add(record.id)
            self._optimistic.add(turn_id)
        turn = self._active.get(turn_id)
        if turn is None:
            turn = self._new_turn(turn_id)
            self._active[turn_id] = turn
        self._changed(turn)
        return turn

    def discard_local_message(self, turn_id: str) -> bool:
        """Roll back an optimistic message that never reached the store.

        Once the stored user row has been observed the turn belongs to the
        store and this is a no-op.
        """
        if turn_id not in self._optimistic:
            return False
        self._optimistic.discard(turn_id)
        record = self._user_messages.pop(turn_id, None)
        if record is not None:
            self._message_ids.discard(record.id)
        turn = self._active.get(turn_id)
        if turn is not None and turn.status is TurnStatus.PENDING and not turn.tool_invocations:
            del self._active[turn_id]
        self.changed.send(self, turn=turn)
        return True

    # Broadcast events

    def apply_event(self, event: ChannelEvent) -> bool:
        """Apply one broadcast event. Returns False when the event was ignored."""
        if isinstance(event, ProcessingStarted):
            return self._on_processing_started(event)
        if isinstance(event, AudioChunk):
            return False
        turn = self._active.get(event.turn_id)
        if turn is None:
            logger.debug("reconcile.event.ignored event={} turn={}", event.event_name, event.turn_id)
            return False
        if isinstance(event, ToolStarted):
            applied = self._on_tool_started(turn, event)
        elif isinstance(event, ToolProgressed):
            applied = self._on_tool_progress(turn, event)
        elif isinstance(event, ToolCompleted):
            applied = self._on_tool_finished(turn, event.tool_call_id, ToolStatus.COMPLETED)
        elif isinstance(event, ToolFailed):
            applied = self._on_tool_finished(turn, event.tool_call_id, ToolStatus.ERROR, event.error)
        elif isinstance(event, ResponseChunk):
            applied = self._on_response_chunk(turn, event)
        elif isinstance(event, ResponseDone):
            applied = self._on_response_done(turn, event)
        else:
            return False
        if applied:
            self._changed(turn)
        return applied

    def _on_processing_started(self, event: ProcessingStarted) -> bool:
        if event.turn_id in self._assistant_messages:
            return False
        turn = self._active.get(event.turn_id)
        if turn is None:
            created_at = datetime.fromtimestamp(event.timestamp / 1000, UTC).isoformat()
            turn = self._new_turn(event.turn_id, created_at=created_at)
            self._active[event.turn_id] = turn
        self.turn_started.send(self, turn=turn)
        self._changed(turn)
        return True

    def _on_tool_started(self, turn: Turn, event: ToolStarted) -> bool:
        turn.message_id = event.message_id
        if turn.invocation(event.tool_call_id) is None:
            invocation = ToolInvocation(id=event.tool_call_id, tool_name=event.tool_name, status=ToolStatus.RUNNING)
            row = self._tool_rows.get(event.tool_call_id)
            if row is not None:
                _merge_row(invocation, row)
            turn.tool_invocations.append(invocation)
        turn.status = turn.status.advance(TurnStatus.TOOLS_RUNNING)
        return True

    def _on_tool_progress(self, turn: Turn, event: ToolProgressed) -> bool:
        invocation = turn.invocation(event.tool_call_id)
        if invocation is None or invocation.status.terminal or event.progress < invocation.progress:
            return False
        invocation.progress = event.progress
        if event.message is not None:
            invocation.progress_message = event.message
        return True

    def _on_tool_finished(self, turn: Turn, call_id: str, status: ToolStatus, error: str | None = None) -> bool:
        invocation = turn.invocation(call_id)
        if invocation is None or invocation.status.terminal:
            return False
        invocation.status = status
        if status is ToolStatus.COMPLETED:
            invocation.progress = 100
        invocation.error = error
        return True

    def _on_response_chunk(self, turn: Turn, event: ResponseChunk) -> bool:
        if turn.turn_id in self._frozen:
            return False
        turn.streaming_response = (turn.streaming_response or "") + event.text
        turn.status = turn.status.advance(TurnStatus.RESPONDING)
        return True

    def _on_response_done(self, turn: Turn, event: ResponseDone) -> bool:
        if turn.turn_id in self._frozen:
            return False
        # Preview only: completion waits for the assistant row.
        self._frozen.add(turn.turn_id)
        turn.message_id = event.message_id
        turn.status = turn.status.advance(TurnStatus.RESPONDING)
        return True

    # Store notifications

    def apply_message_row(self, row: MessageRecord) -> bool:
        """Apply one inserted message row. Returns False for duplicates."""
        if row.session_id != self.session_id or row.id in self._message_ids:
            return False
        if row.role == "user":
            return self._on_user_row(row)
        return self._on_assistant_row(row)

    def _on_user_row(self, row: MessageRecord) -> bool:
        existing = self._user_messages.get(row.turn_id)
        if existing is not None and row.turn_id not in self._optimistic:
            return False
        # The stored row replaces the optimistic copy.
        self._optimistic.discard(row.turn_id)
        if existing is not None:
            self._message_ids.discard(existing.id)
        self._message_ids.add(row.id)
        self._user_messages[row.turn_id] = row
        turn = self._active.get(row.turn_id)
        if turn is None and row.turn_id not in self._assistant_messages:
            turn = self._new_turn(row.turn_id)
            self._active[row.turn_id] = turn
        elif turn is not None:
            turn.user_query = row.content
            turn.created_at = row.created_at
        self._changed(turn)
        return True

    def _on_assistant_row(self, row: MessageRecord) -> bool:
        if row.turn_id in self._assistant_messages:
            return False
        self._message_ids.add(row.id)
        self._assistant_messages[row.turn_id] = row
        self._frozen.discard(row.turn_id)
        live = self._active.pop(row.turn_id, None)
        if live is not None:
            self._snapshots[row.turn_id] = replace(
                live, tool_invocations=[replace(invocation) for invocation in live.tool_invocations]
            )
        turn = self._historical_turn(row.turn_id)
        logger.info("reconcile.turn.committed turn={} tools={}", row.turn_id, len(turn.tool_invocations))
        self.turn_committed.send(self, turn=turn)
        self._changed(turn)
        return True

    def apply_tool_call_row(self, row: ToolCallRecord) -> bool:
        """Merge an inserted tool-call row into its invocation, whatever its status."""
        if row.session_id != self.session_id or row.id in self._tool_row_ids:
            return False
        self._tool_row_ids.add(row.id)
        self._tool_rows[row.tool_call_id] = row
        for turn in self._active.values():
            invocation = turn.invocation(row.tool_call_id)
            if invocation is not None:
                _merge_row(invocation, row)
                self._changed(turn)
                break
        else:
            self.changed.send(self, turn=None)
        return True

    def load_history(self, messages: list[MessageRecord], tool_calls: list[ToolCallRecord]) -> None:
        """Mount-time load. Applying rows already seen live is a no-op."""
        for record in tool_calls:
            self.apply_tool_call_row(record)
        for message in messages:
            self.apply_message_row(message)

    # Internals

    def _new_turn(self, turn_id: str, created_at: str | None = None) -> Turn:
        user = self._user_messages.get(turn_id)
        return Turn(
            turn_id=turn_id,
            session_id=self.session_id,
            created_at=user.created_at if user is not None else (created_at or utc_now()),
            user_query=user.content if user is not None else "",
        )

    def _turn_sort_key(self, turn_id: str) -> tuple[str, str]:
        user = self._user_messages.get(turn_id)
        assistant = self._assistant_messages.get(turn_id)
        first = user or assistant
        return (first.created_at if first is not None else "", turn_id)

    def _historical_turn(self, turn_id: str) -> Turn:
        assistant = self._assistant_messages[turn_id]
        user = self._user_messages.get(turn_id)
        snapshot = self._snapshots.get(turn_id)
        invocations = []
        for call_id in assistant.tool_calls or []:
            row = self._tool_rows.get(call_id)
            if row is not None:
                invocations.append(_invocation_from_row(row))
                continue
            live = snapshot.invocation(call_id) if snapshot is not None else None
            invocations.append(replace(live) if live is not None else ToolInvocation(id=call_id, tool_name=""))
        return Turn(
            turn_id=turn_id,
            session_id=assistant.session_id,
            created_at=user.created_at if user is not None else assistant.created_at,
            user_query=user.content if user is not None else "",
            tool_invocations=invocations,
            assistant_response=assistant.content,
            status=TurnStatus.COMPLETE,
            message_id=assistant.id,
        )

    def _changed(self, turn: Turn | None) -> None:
        self.changed.send(self, turn=turn)


def _merge_row(invocation: ToolInvocation, row: ToolCallRecord) -> None:
    invocation.input = dict(row.input)
    invocation.output = row.output
    invocation.duration_ms = row.duration_ms


def _invocation_from_row(row: ToolCallRecord) -> ToolInvocation:
    try:
        status = ToolStatus(row.status)
    except ValueError:
        status = ToolStatus.COMPLETED
    error = None
    if status is ToolStatus.ERROR and isinstance(row.output, dict):
        error = row.output.get("error")
    return ToolInvocation(
        id=row.tool_call_id,
        tool_name=row.tool_name,
        input=dict(row.input),
        output=row.output,
        status=status,
        progress=100 if status is ToolStatus.COMPLETED else 0,
        duration_ms=row.duration_ms,
        error=error,
    )
