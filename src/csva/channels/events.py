"""Broadcast event models.

Every event published on a ``session:{id}`` topic is one of the models
below. On the wire an event is a ``(name, payload)`` pair where ``name``
is the class's ``event_name`` (``tool:started``) and ``payload`` is the
model dumped with camelCase keys (``toolCallId``).
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ChannelEvent(BaseModel):
    """Base class for all broadcast events."""

    event_name: ClassVar[str]

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    turn_id: str

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ProcessingStarted(ChannelEvent):
    event_name = "processing:started"

    timestamp: int


class ToolStarted(ChannelEvent):
    event_name = "tool:started"

    tool_name: str
    tool_call_id: str
    message_id: str


class ToolProgressed(ChannelEvent):
    event_name = "tool:progress"

    tool_name: str
    tool_call_id: str
    progress: int = Field(ge=0, le=100)
    message: str | None = None


class ToolCompleted(ChannelEvent):
    event_name = "tool:completed"

    tool_name: str
    tool_call_id: str
    result: Any = None


class ToolFailed(ChannelEvent):
    event_name = "tool:failed"

    tool_name: str
    tool_call_id: str
    error: str


class ResponseChunk(ChannelEvent):
    event_name = "response:chunk"

    text: str


class ResponseDone(ChannelEvent):
    event_name = "response:done"

    message_id: str


class AudioChunk(ChannelEvent):
    event_name = "audio:chunk"

    audio: str
    seq: int = 0
    final: bool = False


_EVENTS: dict[str, type[ChannelEvent]] = {}


def register_event(event_class: type[ChannelEvent]) -> type[ChannelEvent]:
    """Register an event class under its wire name."""
    existing = _EVENTS.get(event_class.event_name)
    if existing is not None and existing is not event_class:
        raise ValueError(
            f"Event name '{event_class.event_name}' already registered with different class: "
            f"{existing.__name__} vs {event_class.__name__}"
        )
    _EVENTS[event_class.event_name] = event_class
    return event_class


for _event_class in (
    ProcessingStarted,
    ToolStarted,
    ToolProgressed,
    ToolCompleted,
    ToolFailed,
    ResponseChunk,
    ResponseDone,
    AudioChunk,
):
    register_event(_event_class)


def event_names() -> list[str]:
    return sorted(_EVENTS)


def parse_event(name: str, payload: dict[str, Any]) -> ChannelEvent:
    """Build a typed event from its wire name and payload.

    Raises:
        KeyError: If no event is registered under ``name``
        pydantic.ValidationError: If the payload does not match the schema
    """
    return _EVENTS[name].model_validate(payload)
