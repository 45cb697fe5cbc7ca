"""Knowledge base and the knowledge Q&A tool."""

from __future__ import annotations

import re
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger
from rapidfuzz import fuzz

from csva.errors import StoreError

from .registry import ProgressCallback, ToolDescriptor, define_tool
from .shared import KnowledgeQAInput

MIN_MATCH_SCORE = 50
HEADING_RE = re.compile(r"^#{1,3}\s+(.+?)\s*$")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS knowledge (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL
);
"""


@dataclass(frozen=True)
class KnowledgeEntry:
    id: str
    category: str
    title: str
    content: str


@dataclass(frozen=True)
class KnowledgeMatch:
    entry: KnowledgeEntry
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.entry.title,
            "content": self.entry.content,
            "category": self.entry.category,
            "similarity": round(self.similarity, 3),
        }


class KnowledgeBase:
    """Business knowledge entries kept in SQLite, ranked by fuzzy match."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        self._local = threading.local()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            conn = sqlite3.connect(self.db_path)
            conn.row_factory = sqlite3.Row
            conn.executescript(_SCHEMA)
            conn.commit()
            self._local.conn = conn
            return conn
        return self._local.conn  # type: ignore[no-any-return]

    def add(self, title: str, content: str, category: str = "general") -> KnowledgeEntry:
        entry = KnowledgeEntry(id=uuid.uuid4().hex, category=category, title=title.strip(), content=content.strip())
        try:
            self._conn.execute(
                "INSERT INTO knowledge (id, category, title, content) VALUES (?, ?, ?, ?)",
                (entry.id, entry.category, entry.title, entry.content),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        return entry

    def ingest_markdown(self, text: str, category: str = "general") -> int:
        """Split a markdown document on headings and store one entry per section."""
        count = 0
        for title, body in _split_sections(text):
            if body:
                self.add(title, body, category)
                count += 1
        logger.info("knowledge.ingest entries={} category={}", count, category)
        return count

    def entries(self, category: str | None = None) -> list[KnowledgeEntry]:
        if category is None:
            rows = self._conn.execute("SELECT * FROM knowledge ORDER BY rowid").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM knowledge WHERE category = ? ORDER BY rowid", (category,)
            ).fetchall()
        return [KnowledgeEntry(row["id"], row["category"], row["title"], row["content"]) for row in rows]

    def search(self, query: str, *, limit: int = 3, category: str | None = None) -> list[KnowledgeMatch]:
        normalized = query.strip().lower()
        if not normalized:
            return []
        matches: list[KnowledgeMatch] = []
        for entry in self.entries(category):
            haystack = f"{entry.title}\n{entry.content}".lower()
            score = fuzz.WRatio(normalized, haystack)
            if score >= MIN_MATCH_SCORE:
                matches.append(KnowledgeMatch(entry=entry, similarity=score / 100))
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches[:limit]

    def render_context(self, query: str, *, limit: int = 3) -> str | None:
        """Render the best entries as a retrieved-context block, or None when nothing matches."""
        matches = self.search(query, limit=limit)
        if not matches:
            return None
        return "\n\n".join(f"[{match.entry.category}] {match.entry.title}\n{match.entry.content}" for match in matches)


def _split_sections(text: str) -> list[tuple[str, str]]:
    sections: list[tuple[str, str]] = []
    title = "Overview"
    lines: list[str] = []
    for line in text.splitlines():
        heading = HEADING_RE.match(line)
        if heading:
            sections.append((title, "\n".join(lines).strip()))
            title, lines = heading.group(1), []
            continue
        lines.append(line)
    sections.append((title, "\n".join(lines).strip()))
    return sections


def create_knowledge_qa_tool(knowledge: KnowledgeBase) -> ToolDescriptor:
    """Create the knowledge base Q&A tool."""

    async def _handler(params: KnowledgeQAInput, progress: ProgressCallback) -> dict[str, Any]:
        progress(10, "Searching knowledge base...")
        matches = knowledge.search(params.query, limit=params.max_results, category=params.category)
        progress(90, "Preparing answer...")
        if not matches:
            message = "No relevant information found in the knowledge base."
        else:
            message = f"Found {len(matches)} relevant entries."
        progress(100, message)
        return {"query": params.query, "results": [match.to_dict() for match in matches], "message": message}

    return define_tool(
        KnowledgeQAInput,
        _handler,
        name="knowledge_qa",
        description=(
            "Answer questions about the business: services, prices, policies and opening hours. "
            "Use this before searching the web."
        ),
    )
