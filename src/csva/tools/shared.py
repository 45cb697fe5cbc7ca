"""Shared tool input models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class WebFetchInput(BaseModel):
    """Fetch a web page and return it as markdown."""

    url: str = Field(..., description="HTTP or HTTPS URL to fetch")


class WebSearchInput(BaseModel):
    """Search the web for current information."""

    query: str = Field(..., description="Search query")
    max_results: int = Field(default=5, ge=1, le=10, description="Maximum number of results")


class KnowledgeQAInput(BaseModel):
    """Search the business knowledge base."""

    query: str = Field(..., description="Customer question or keywords to look up")
    category: Literal["services", "policies", "hours", "general"] | None = Field(
        default=None, description="Optional category to narrow down the search"
    )
    max_results: int = Field(default=3, ge=1, le=10, description="Maximum number of entries")
