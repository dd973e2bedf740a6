"""Temporal buffering modules (store, collection windows, filters, clock)."""

from clone_agent.temporal.buffer_store import BufferStore, InMemoryBufferStore, minute_key
from clone_agent.temporal.clock import OperatingClock
from clone_agent.temporal.collector import Collector
from clone_agent.temporal.content_filters import is_conversation_closing, is_only_emojis
from clone_agent.temporal.recent_events import RecentEventSet

__all__ = [
    "BufferStore",
    "InMemoryBufferStore",
    "minute_key",
    "OperatingClock",
    "Collector",
    "is_conversation_closing",
    "is_only_emojis",
    "RecentEventSet",
]
