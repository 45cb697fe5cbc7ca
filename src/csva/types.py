"""Turn, tool invocation and persisted row types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

type Role = Literal["user", "assistant"]
type JSONObject = dict[str, Any]


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


class TurnStatus(StrEnum):
    """Per-turn lifecycle. Transitions only move forward."""

    PENDING = "pending"
    TOOLS_RUNNING = "tools_running"
    RESPONDING = "responding"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _TURN_ORDER.index(self)

    def advance(self, target: TurnStatus) -> TurnStatus:
        """Return ``target`` if it moves forward, otherwise stay put."""
        return target if target.rank > self.rank else self


_TURN_ORDER = (TurnStatus.PENDING, TurnStatus.TOOLS_RUNNING, TurnStatus.RESPONDING, TurnStatus.COMPLETE)


class ToolStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (ToolStatus.COMPLETED, ToolStatus.ERROR)


@dataclass
class ToolInvocation:
    """One model-requested tool call as seen by a client."""

    id: str
    tool_name: str
    input: JSONObject = field(default_factory=dict)
    output: JSONObject | None = None
    status: ToolStatus = ToolStatus.PENDING
    progress: int = 0
    progress_message: str | None = None
    duration_ms: int | None = None
    error: str | None = None


@dataclass
class Turn:
    """One user utterance and everything produced in response to it."""

    turn_id: str
    session_id: str
    created_at: str
    user_query: str = ""
    tool_invocations: list[ToolInvocation] = field(default_factory=list)
    assistant_response: str | None = None
    streaming_response: str | None = None
    status: TurnStatus = TurnStatus.PENDING
    message_id: str | None = None

    @property
    def complete(self) -> bool:
        return self.status is TurnStatus.COMPLETE

    def invocation(self, call_id: str) -> ToolInvocation | None:
        for invocation in self.tool_invocations:
            if invocation.id == call_id:
                return invocation
        return None


@dataclass(frozen=True)
class MessageRecord:
    """Row of the ``messages`` table."""

    id: str
    session_id: str
    turn_id: str
    role: Role
    content: str
    tool_calls: list[str] | None = None
    created_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class ToolCallRecord:
    """Row of the ``tool_calls`` table."""

    id: str
    tool_call_id: str
    session_id: str
    tool_name: str
    input: JSONObject
    output: JSONObject | None
    status: str
    duration_ms: int | None
    message_id: str | None = None
    created_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class TurnJob:
    """Payload carried by the job queue from intake to the worker."""

    session_id: str
    message: str
    turn_id: str
    timestamp: int

    def to_payload(self) -> JSONObject:
        return {
            "sessionId": self.session_id,
            "message": self.message,
            "turnId": self.turn_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_payload(cls, payload: JSONObject) -> TurnJob:
        return cls(
            session_id=str(payload["sessionId"]),
            message=str(payload["message"]),
            turn_id=str(payload["turnId"]),
            timestamp=int(payload.get("timestamp") or 0),
        )
