"""Built-in tool set."""

from __future__ import annotations

from csva.config import Settings

from .knowledge import KnowledgeBase, create_knowledge_qa_tool
from .registry import ToolRegistry
from .web import create_web_fetch_tool, create_web_search_tool


def build_tool_registry(settings: Settings, knowledge: KnowledgeBase) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(create_knowledge_qa_tool(knowledge))
    registry.register(create_web_search_tool(settings.tavily_api_key))
    registry.register(create_web_fetch_tool())
    return registry
