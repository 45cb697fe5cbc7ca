"""Broadcast channel: wire events and the per-session hub."""

from .bus import Broadcaster, ChannelHub, topic_for
from .events import ChannelEvent, parse_event

__all__ = ["Broadcaster", "ChannelEvent", "ChannelHub", "parse_event", "topic_for"]
