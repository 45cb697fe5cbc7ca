"""Signal-based per-session broadcast hub."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from blinker import Signal
from loguru import logger

from csva.channels.events import ChannelEvent

EventHandler = Callable[[ChannelEvent], Awaitable[None] | None]


def topic_for(session_id: str) -> str:
    return f"session:{session_id}"


class Broadcaster(Protocol):
    """Publish side of the broadcast channel."""

    async def publish(self, session_id: str, event: ChannelEvent) -> None: ...


class ChannelHub:
    """In-process broadcast hub backed by one blinker signal per session topic.

    Delivery is ordered per publisher and best-effort: a subscriber that
    raises is logged and does not stop delivery to the others, and
    nothing is replayed to subscribers that connect later.
    """

    def __init__(self) -> None:
        self._topics: dict[str, Signal] = {}

    def _signal(self, session_id: str) -> Signal:
        topic = topic_for(session_id)
        if topic not in self._topics:
            self._topics[topic] = Signal(topic)
        return self._topics[topic]

    async def publish(self, session_id: str, event: ChannelEvent) -> None:
        signal = self._topics.get(topic_for(session_id))
        if signal is None or not signal.receivers:
            return
        try:
            await signal.send_async(self, event=event)
        except Exception:
            logger.exception("channel.publish.error session={} event={}", session_id, event.event_name)

    def subscribe(self, session_id: str, handler: EventHandler) -> Callable[[], None]:
        async def _receiver(sender: Any, *, event: ChannelEvent) -> None:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("channel.handler.error session={} event={}", session_id, event.event_name)

        signal = self._signal(session_id)
        signal.connect(_receiver, weak=False)

        def _unsubscribe() -> None:
            signal.disconnect(_receiver)
            if not signal.receivers:
                self._topics.pop(topic_for(session_id), None)

        return _unsubscribe

    def subscriber_count(self, session_id: str) -> int:
        signal = self._topics.get(topic_for(session_id))
        return len(signal.receivers) if signal is not None else 0
