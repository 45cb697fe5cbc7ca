"""Durable store for messages and tool-call records."""

from .service import MessageStore

__all__ = ["MessageStore"]
