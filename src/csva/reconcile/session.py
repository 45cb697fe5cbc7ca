"""A connected client: one reconciler wired to the hub and the store."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from loguru import logger

from csva.channels.bus import ChannelHub
from csva.channels.events import AudioChunk, ChannelEvent
from csva.errors import CsvaError
from csva.intake import IntakeResult, IntakeService, new_id
from csva.message_store.service import MessageStore, Table
from csva.reconcile.engine import TurnReconciler
from csva.speech import PlaybackQueue
from csva.types import MessageRecord, ToolCallRecord, Turn


class LiveSession:
    """Client-side view of one session.

    ``open()`` subscribes to the broadcast topic and the store
    notifications before querying history, so rows written in between
    are seen twice at worst and deduplicated by the reconciler.
    Audio frames go to the playback queue, which is cut whenever a new
    turn starts processing.
    """

    def __init__(
        self,
        session_id: str,
        *,
        hub: ChannelHub,
        store: MessageStore,
        playback: PlaybackQueue | None = None,
    ) -> None:
        self.session_id = session_id
        self.engine = TurnReconciler(session_id)
        self.playback = playback or PlaybackQueue()
        self._hub = hub
        self._store = store
        self._unsubscribers: list[Callable[[], None]] = []
        self._committed: dict[str, asyncio.Event] = {}

    async def open(self) -> LiveSession:
        self.engine.turn_started.connect(self._on_turn_started, weak=False)
        self.engine.turn_committed.connect(self._on_turn_committed, weak=False)
        self._unsubscribers.append(self._hub.subscribe(self.session_id, self._on_event))
        self._unsubscribers.append(self._store.on_insert(self.session_id, self._on_row))
        self.engine.load_history(
            self._store.get_messages(self.session_id),
            self._store.get_tool_calls(self.session_id),
        )
        logger.info("session.open session={} history={}", self.session_id, len(self.engine.history))
        return self

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.engine.turn_started.disconnect(self._on_turn_started)
        self.engine.turn_committed.disconnect(self._on_turn_committed)
        self.playback.clear()

    async def __aenter__(self) -> LiveSession:
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def busy(self) -> bool:
        return self.engine.busy

    async def send(self, intake: IntakeService, text: str) -> IntakeResult:
        """Submit an utterance, showing it optimistically until the store has it.

        A failure before the user row is stored rolls the optimistic copy
        back. After that the stored rows decide, so a failed enqueue shows
        up as the turn closed by intake, exactly as a reloaded client sees it.
        """
        turn_id = f"turn_{new_id()}"
        self.engine.add_local_message(turn_id, text.strip())
        self._committed.setdefault(turn_id, asyncio.Event())
        try:
            return await intake.submit(text, session_id=self.session_id, turn_id=turn_id)
        except CsvaError:
            self.engine.discard_local_message(turn_id)
            self._committed.pop(turn_id, None)
            raise

    async def wait_committed(self, turn_id: str, timeout: float | None = None) -> Turn:
        """Wait until the assistant message of ``turn_id`` is observed in the store."""
        if not self.engine.is_committed(turn_id):
            event = self._committed.setdefault(turn_id, asyncio.Event())
            async with asyncio.timeout(timeout):
                await event.wait()
        turn = self.engine.turn(turn_id)
        if turn is None:
            raise LookupError(f"turn {turn_id} is not tracked by session {self.session_id}")
        return turn

    def _on_event(self, event: ChannelEvent) -> None:
        if isinstance(event, AudioChunk):
            self.playback.enqueue(event)
            return
        self.engine.apply_event(event)

    def _on_row(self, table: Table, row: MessageRecord | ToolCallRecord) -> None:
        if isinstance(row, MessageRecord):
            self.engine.apply_message_row(row)
        elif isinstance(row, ToolCallRecord):
            self.engine.apply_tool_call_row(row)
        else:
            logger.warning("session.row.unknown table={}", table)

    def _on_turn_started(self, sender: Any, *, turn: Turn) -> None:
        self.playback.start_turn(turn.turn_id)

    def _on_turn_committed(self, sender: Any, *, turn: Turn) -> None:
        event = self._committed.pop(turn.turn_id, None)
        if event is not None:
            event.set()
