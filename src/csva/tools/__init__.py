"""Model-callable tools and the tool executor."""

from .builtin import build_tool_registry
from .knowledge import KnowledgeBase
from .registry import ProgressCallback, ToolDescriptor, ToolRegistry, define_tool

__all__ = ["KnowledgeBase", "ProgressCallback", "ToolDescriptor", "ToolRegistry", "build_tool_registry", "define_tool"]
