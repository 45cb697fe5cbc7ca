"""System instruction rendering."""

from __future__ import annotations

from csva.llm import ChatMessage
from csva.types import MessageRecord

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful customer service agent. Be concise, friendly, and helpful.\n"
    "Answers are read aloud, so prefer short sentences and avoid markdown tables.\n\n"
    "Use knowledge_qa for questions about the business (services, prices, policies, hours). "
    "Use web_search to find current information from the internet when the knowledge base does not cover it, "
    "and web_fetch to read a specific page."
)


def render_context_block(context: str) -> str:
    return f"<retrieved_context>\n{context.strip()}\n</retrieved_context>"


def build_transcript(
    history: list[MessageRecord],
    *,
    system_prompt: str | None = None,
    context: str | None = None,
) -> list[ChatMessage]:
    """Seed the working transcript: system instruction, history, then retrieved context."""
    transcript: list[ChatMessage] = [{"role": "system", "content": (system_prompt or DEFAULT_SYSTEM_PROMPT).strip()}]
    transcript.extend({"role": message.role, "content": message.content} for message in history)
    if context and context.strip():
        transcript.append({"role": "system", "content": render_context_block(context)})
    return transcript
