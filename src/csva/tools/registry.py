"""Unified tool registry."""

from __future__ import annotations

import builtins
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from csva.errors import ToolExecutionError, UnknownToolError

ProgressCallback = Callable[[int, str | None], None]
ToolHandler = Callable[[Any, ProgressCallback], Awaitable[Any]]


def _noop_progress(_progress: int, _message: str | None = None) -> None:
    return None


def _shorten_text(text: str, width: int = 30, placeholder: str = "...") -> str:
    """Shorten text to width characters, cutting in the middle of words if needed."""
    if len(text) <= width:
        return text

    available = width - len(placeholder)
    if available <= 0:
        return placeholder

    return text[:available] + placeholder


@dataclass(frozen=True)
class ToolDescriptor:
    """Tool metadata and runtime handle."""

    name: str
    description: str
    input_model: type[BaseModel]
    handler: ToolHandler

    def schema(self) -> dict[str, Any]:
        parameters = self.input_model.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


def define_tool(
    input_model: type[BaseModel],
    handler: ToolHandler,
    *,
    name: str,
    description: str,
) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=description, input_model=input_model, handler=handler)


class ToolRegistry:
    """Registry of model-callable tools. Also the tool executor of the orchestration loop."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Duplicate tool name: {descriptor.name}")
        self._tools[descriptor.name] = descriptor

    def has(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def descriptors(self) -> builtins.list[ToolDescriptor]:
        return sorted(self._tools.values(), key=lambda item: item.name)

    def model_tools(self) -> builtins.list[dict[str, Any]]:
        """Tool schema catalog in OpenAI function-calling format."""
        return [descriptor.schema() for descriptor in self.descriptors()]

    def _log_tool_call(self, name: str, kwargs: dict[str, Any]) -> None:
        params: list[str] = []
        for key, value in kwargs.items():
            try:
                rendered = json.dumps(value, ensure_ascii=False)
            except TypeError:
                rendered = repr(value)
            params.append(f"{key}={_shorten_text(rendered, width=30, placeholder='...')}")
        logger.info("tool.call.start name={} {{ {} }}", name, ", ".join(params))

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        on_progress: ProgressCallback | None = None,
    ) -> Any:
        """Run one tool.

        Raises:
            UnknownToolError: If no tool is registered under ``name``
            ToolExecutionError: If the arguments do not validate
            Exception: Whatever the tool itself raises
        """
        descriptor = self.get(name)
        if descriptor is None:
            raise UnknownToolError(name)

        try:
            params = descriptor.input_model.model_validate(args)
        except ValidationError as exc:
            raise ToolExecutionError(f"invalid arguments for {name}: {exc.error_count()} error(s)") from exc

        self._log_tool_call(name, args)
        start = time.monotonic()
        try:
            return await descriptor.handler(params, on_progress or _noop_progress)
        except Exception:
            logger.exception("tool.call.error name={}", name)
            raise
        finally:
            duration = time.monotonic() - start
            logger.info("tool.call.end name={} duration={:.3f}ms", name, duration * 1000)
