"""Typed progress channel between a running tool and the orchestration loop."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass


@dataclass(frozen=True)
class ToolProgress:
    """One progress report of a running tool invocation."""

    tool_call_id: str
    tool_name: str
    progress: int
    message: str | None = None


class ProgressChannel:
    """Single-producer, single-consumer stream of progress reports.

    The tool side calls :meth:`report` synchronously; the loop side
    iterates with ``async for`` until :meth:`close`. Reported values are
    clamped to 0..100 and never decrease.
    """

    def __init__(self, tool_call_id: str, tool_name: str) -> None:
        self.tool_call_id = tool_call_id
        self.tool_name = tool_name
        self._queue: asyncio.Queue[ToolProgress | None] = asyncio.Queue()
        self._last = 0
        self._closed = False

    @property
    def last(self) -> int:
        return self._last

    def report(self, progress: int, message: str | None = None) -> None:
        if self._closed:
            return
        value = max(self._last, min(100, int(progress)))
        self._last = value
        self._queue.put_nowait(ToolProgress(self.tool_call_id, self.tool_name, value, message))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def __aiter__(self) -> AsyncIterator[ToolProgress]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item
