"""
Collector - buffers inbound messages into collection windows.

Runs on the webhook path and returns as soon as the item is appended.
It never decides readiness: an entry becomes due when its window_end
passes, which the Processor Loop checks on its own schedule.

Items are dropped (not buffered) when they:
- come from our own endpoint (self-feedback)
- come from a group without a buffering policy for that endpoint
- were already seen (same event delivered twice)
- are stickers, emoji-only reactions or conversation closings
"""
import logging
from typing import Optional

from clone_agent.core.errors import EntryNotFound, InvalidState
from clone_agent.core.models import ConversationKey, InboundItem, MessageKind, QueueEntry
from clone_agent.integrations.normalizer import normalize_waha_event
from clone_agent.temporal.buffer_store import BufferStore
from clone_agent.temporal.content_filters import is_conversation_closing, is_only_emojis
from clone_agent.temporal.recent_events import RecentEventSet

logger = logging.getLogger(__name__)

# get_or_create + append can race with the entry being completed; retry that many times
MAX_APPEND_ATTEMPTS = 3

class Collector:
    """
    Appends inbound items to the active entry of their conversation.

    Attributes:
        store: Buffer Store holding the entries
        recent_events: De-duplication set for event ids
        default_window_seconds: Window for direct conversations
        group_windows: Endpoint id -> window seconds for group chats. Groups
            on endpoints missing here are ignored.
        stats: Counters of buffered and dropped items
    """

    def __init__(
        self,
        store: BufferStore,
        recent_events: Optional[RecentEventSet] = None,
        default_window_seconds: int = 30,
        group_windows: Optional[dict[str, int]] = None,
    ):
        self.store = store
        self.recent_events = recent_events or RecentEventSet()
        self.default_window_seconds = default_window_seconds
        self.group_windows = dict(group_windows or {})
        self.stats = {
            "buffered": 0,
            "dropped_own": 0,
            "dropped_group": 0,
            "dropped_duplicate": 0,
            "dropped_filtered": 0,
        }

    def _window_for(self, key: ConversationKey, window_seconds: Optional[int]) -> Optional[int]:
        if key.is_group:
            return self.group_windows.get(key.endpoint_id)
        return window_seconds or self.default_window_seconds

    def _is_filtered(self, item: InboundItem) -> bool:
        if item.kind != MessageKind.TEXT:
            return False
        return is_only_emojis(item.content) or is_conversation_closing(item.content)

    async def collect(
        self,
        key: ConversationKey,
        item: InboundItem,
        window_seconds: Optional[int] = None,
    ) -> Optional[QueueEntry]:
        """
        Buffer one inbound item.

        Args:
            key: Conversation the item belongs to
            item: The inbound item
            window_seconds: Window length when a new entry is opened.
                Ignored for groups, which use their endpoint policy.

        Returns:
            The entry after the append, or None if the item was dropped
        """
        if item.from_me:
            self.stats["dropped_own"] += 1
            return None

        window = self._window_for(key, window_seconds)
        if window is None:
            self.stats["dropped_group"] += 1
            logger.debug(f"No group policy for {key.as_string()}, ignoring")
            return None

        if item.event_id and not self.recent_events.check_and_add(item.event_id):
            self.stats["dropped_duplicate"] += 1
            logger.debug(f"Duplicate event {item.event_id} ignored")
            return None

        if self._is_filtered(item):
            self.stats["dropped_filtered"] += 1
            logger.info(f"Filtered message from {key.as_string()}: {item.content[:40]!r}")
            return None

        for _ in range(MAX_APPEND_ATTEMPTS):
            entry = await self.store.get_or_create_active(key, window)
            try:
                entry = await self.store.append(entry.id, item)
            except (EntryNotFound, InvalidState) as e:
                # Entry left the active set between lookup and append
                logger.debug(f"Append to {entry.short_id()} lost a race ({e}), retrying")
                continue

            self.stats["buffered"] += 1
            logger.debug(
                f"Buffered item for {key.as_string()} in {entry.short_id()} "
                f"({len(entry.payload)} item(s), window ends {entry.window_end.isoformat()})"
            )
            return entry

        raise InvalidState(
            f"Could not append to an active entry for {key.as_string()} "
            f"after {MAX_APPEND_ATTEMPTS} attempts"
        )

    async def collect_event(self, payload: dict) -> Optional[QueueEntry]:
        """Normalize a WAHA webhook body and buffer it."""
        event = normalize_waha_event(payload)
        if event is None:
            return None
        if event.is_sticker:
            self.stats["dropped_filtered"] += 1
            logger.debug(f"Sticker from {event.counterpart} ignored")
            return None
        if event.kind == MessageKind.TEXT and not event.content.strip():
            return None
        return await self.collect(event.key, event.to_item())
