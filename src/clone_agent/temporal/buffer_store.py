"""
Buffer Store - persistent keyed store of queue entries.

BufferStore is the contract every backend implements; each operation is
atomic with respect to concurrent callers. InMemoryBufferStore serialises
operations behind an asyncio.Lock and is used by tests and single-process
runs. The Postgres backend lives in clone_agent.database.queue_db.

Ownership rules:
- At most one entry per conversation key is in collecting/ready/processing.
- claim() is the only way into processing and is a single check-and-set.
- A processing lease older than lease_timeout is abandoned and reclaimable.
- window_end, reply and sent_at are written once.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional

from clone_agent.core.errors import EntryNotFound, InvalidState, SlotTaken
from clone_agent.core.models import (
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    ConversationKey,
    InboundItem,
    Lease,
    QueueEntry,
    QueueStatus,
    check_transition,
)
from clone_agent.temporal.clock import OperatingClock

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000
DEFAULT_MAX_RETRIES = 3
DEFAULT_LEASE_TIMEOUT = timedelta(minutes=5)

def minute_key(moment: datetime) -> int:
    """Calendar minute of moment as minutes since the epoch."""
    return int(moment.timestamp() // 60)

def new_entry_id() -> str:
    return str(uuid.uuid4())

class BufferStore(ABC):
    """
    Contract for queue entry storage.

    Attributes:
        max_retries: Failures after which an entry becomes terminally failed
        lease_timeout: Age after which a lease counts as abandoned
        clock: Time source
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        lease_timeout: timedelta = DEFAULT_LEASE_TIMEOUT,
        clock: Optional[OperatingClock] = None,
    ):
        self.max_retries = max_retries
        self.lease_timeout = lease_timeout
        self.clock = clock or OperatingClock()

    # Collection

    @abstractmethod
    async def get_or_create_active(
        self, key: ConversationKey, window_seconds: int
    ) -> QueueEntry:
        """Return the active entry for key, or open one ending window_seconds from now."""

    @abstractmethod
    async def append(self, entry_id: str, item: InboundItem) -> QueueEntry:
        """
        Append item to the entry payload.

        Raises:
            EntryNotFound: If the entry does not exist
            InvalidState: If the entry is no longer active
        """

    # Processing

    @abstractmethod
    async def list_due(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        """Entries whose window has elapsed and that nobody holds a live lease on."""

    @abstractmethod
    async def claim(self, entry_id: str, owner_id: str) -> bool:
        """Atomically move an eligible entry to processing under owner_id."""

    @abstractmethod
    async def complete(
        self, entry_id: str, reply: str, owner_id: Optional[str] = None
    ) -> QueueEntry:
        """Store the reply, move to completed and carry late items to a new entry."""

    @abstractmethod
    async def fail(
        self,
        entry_id: str,
        reason: str,
        permanent: bool = False,
        owner_id: Optional[str] = None,
    ) -> QueueEntry:
        """Count a failed attempt; back to ready, or failed once the cap is hit."""

    # Dispatch

    @abstractmethod
    async def schedule(self, entry_id: str, send_at: datetime) -> QueueEntry:
        """
        Set the send time of a completed entry.

        Raises:
            SlotTaken: If another unsent entry already uses that minute
        """

    @abstractmethod
    async def occupied_send_times(self) -> list[datetime]:
        """Scheduled send times of every entry not yet sent."""

    @abstractmethod
    async def list_unscheduled(self, limit: int = 50) -> list[QueueEntry]:
        """Completed entries that never got a send time."""

    # Delivery

    @abstractmethod
    async def list_sendable(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        """Completed, unsent entries whose send time has arrived."""

    @abstractmethod
    async def claim_delivery(self, entry_id: str, owner_id: str) -> bool:
        """Take the delivery lease so only one sender delivers the entry."""

    @abstractmethod
    async def release_delivery(self, entry_id: str, owner_id: str) -> None:
        """Give the delivery lease back after a failed delivery."""

    @abstractmethod
    async def mark_sent(self, entry_id: str) -> QueueEntry:
        """Set sent_at once. Calling it again on a sent entry is a no-op."""

    # Lookup

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        """Fetch an entry by id, or None."""

    def _lease_expired(self, acquired_at: Optional[datetime], now: datetime) -> bool:
        return acquired_at is None or acquired_at <= now - self.lease_timeout

class InMemoryBufferStore(BufferStore):
    """
    Process-local BufferStore.

    Every operation runs under one asyncio.Lock, which makes each of them
    atomic for coroutines sharing the event loop. Entries handed out are
    copies; mutating them has no effect on the store.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        lease_timeout: timedelta = DEFAULT_LEASE_TIMEOUT,
        clock: Optional[OperatingClock] = None,
    ):
        super().__init__(max_retries=max_retries, lease_timeout=lease_timeout, clock=clock)
        self._entries: dict[str, QueueEntry] = {}
        self._active: dict[str, str] = {}  # conversation key -> active entry id
        self._lock = asyncio.Lock()

    def _require(self, entry_id: str) -> QueueEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    def _open(self, key: ConversationKey, window_seconds: int, now: datetime) -> QueueEntry:
        entry = QueueEntry(
            id=new_entry_id(),
            conversation_key=key,
            window_end=now + timedelta(seconds=window_seconds),
            window_seconds=window_seconds,
            created_at=now,
            updated_at=now,
        )
        self._entries[entry.id] = entry
        self._active[key.as_string()] = entry.id
        return entry

    def _release_active(self, entry: QueueEntry, now: datetime) -> Optional[QueueEntry]:
        """Drop entry as its conversation's active one, carrying late items over."""
        key = entry.conversation_key.as_string()
        if self._active.get(key) == entry.id:
            del self._active[key]

        late = entry.payload[entry.consumed_count:]
        if not late:
            return None

        entry.payload = entry.payload[:entry.consumed_count]
        carried = self._open(entry.conversation_key, entry.window_seconds, now)
        carried.payload = late
        logger.info(
            f"Carried {len(late)} late item(s) from {entry.short_id()} "
            f"into {carried.short_id()}"
        )
        return carried

    def _lease_owner_check(self, entry: QueueEntry, owner_id: Optional[str]) -> None:
        if owner_id is not None and (entry.lease is None or entry.lease.owner_id != owner_id):
            raise InvalidState(f"Entry {entry.id} is no longer leased by {owner_id}")

    def _slot_taken(self, entry_id: str, send_at: datetime) -> bool:
        key = minute_key(send_at)
        return any(
            other.id != entry_id
            and other.sent_at is None
            and other.scheduled_send_at is not None
            and minute_key(other.scheduled_send_at) == key
            for other in self._entries.values()
        )

    async def get_or_create_active(
        self, key: ConversationKey, window_seconds: int
    ) -> QueueEntry:
        async with self._lock:
            entry_id = self._active.get(key.as_string())
            if entry_id is not None:
                return self._entries[entry_id].model_copy(deep=True)

            entry = self._open(key, window_seconds, self.clock.now())
            logger.debug(f"Opened entry {entry.short_id()} for {key.as_string()}")
            return entry.model_copy(deep=True)

    async def append(self, entry_id: str, item: InboundItem) -> QueueEntry:
        async with self._lock:
            entry = self._require(entry_id)
            if entry.status not in ACTIVE_STATUSES:
                raise InvalidState(f"Cannot append to entry {entry_id} in status {entry.status.value}")
            entry.payload.append(item)
            entry.updated_at = self.clock.now()
            return entry.model_copy(deep=True)

    def _is_claimable(self, entry: QueueEntry, now: datetime) -> bool:
        if entry.window_end > now:
            return False
        if entry.status in CLAIMABLE_STATUSES:
            return entry.lease is None or entry.lease.is_expired(now, self.lease_timeout)
        if entry.status == QueueStatus.PROCESSING:
            return entry.lease is None or entry.lease.is_expired(now, self.lease_timeout)
        return False

    async def list_due(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        async with self._lock:
            now = now or self.clock.now()
            due = [e for e in self._entries.values() if self._is_claimable(e, now)]
            due.sort(key=lambda e: e.window_end)
            return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim(self, entry_id: str, owner_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            now = self.clock.now()
            if entry is None or not self._is_claimable(entry, now):
                return False

            check_transition(entry.status, QueueStatus.PROCESSING)
            entry.status = QueueStatus.PROCESSING
            entry.lease = Lease(owner_id=owner_id, acquired_at=now)
            entry.consumed_count = len(entry.payload)
            entry.updated_at = now
            return True

    async def complete(
        self, entry_id: str, reply: str, owner_id: Optional[str] = None
    ) -> QueueEntry:
        async with self._lock:
            entry = self._require(entry_id)
            if entry.reply is not None:
                raise InvalidState(f"Entry {entry_id} already has a reply")
            check_transition(entry.status, QueueStatus.COMPLETED)
            self._lease_owner_check(entry, owner_id)

            now = self.clock.now()
            entry.reply = reply
            entry.status = QueueStatus.COMPLETED
            entry.lease = None
            entry.updated_at = now
            self._release_active(entry, now)
            return entry.model_copy(deep=True)

    async def fail(
        self,
        entry_id: str,
        reason: str,
        permanent: bool = False,
        owner_id: Optional[str] = None,
    ) -> QueueEntry:
        async with self._lock:
            entry = self._require(entry_id)
            self._lease_owner_check(entry, owner_id)

            now = self.clock.now()
            retry_count = entry.retry_count + 1
            target = (
                QueueStatus.FAILED
                if permanent or retry_count >= self.max_retries
                else QueueStatus.READY
            )
            check_transition(entry.status, target)

            entry.retry_count = retry_count
            entry.status = target
            entry.last_error = (reason or "")[:MAX_ERROR_LENGTH]
            entry.lease = None
            entry.updated_at = now
            if target == QueueStatus.FAILED:
                self._release_active(entry, now)
            return entry.model_copy(deep=True)

    async def schedule(self, entry_id: str, send_at: datetime) -> QueueEntry:
        async with self._lock:
            entry = self._require(entry_id)
            if entry.status != QueueStatus.COMPLETED or entry.sent_at is not None:
                raise InvalidState(
                    f"Cannot schedule entry {entry_id} in status {entry.status.value}"
                )
            if self._slot_taken(entry_id, send_at):
                raise SlotTaken(minute_key(send_at))

            entry.scheduled_send_at = send_at
            entry.updated_at = self.clock.now()
            return entry.model_copy(deep=True)

    async def occupied_send_times(self) -> list[datetime]:
        async with self._lock:
            return sorted(
                e.scheduled_send_at
                for e in self._entries.values()
                if e.scheduled_send_at is not None and e.sent_at is None
            )

    async def list_unscheduled(self, limit: int = 50) -> list[QueueEntry]:
        async with self._lock:
            pending = [
                e for e in self._entries.values()
                if e.status == QueueStatus.COMPLETED
                and e.scheduled_send_at is None
                and e.sent_at is None
            ]
            pending.sort(key=lambda e: e.updated_at or e.window_end)
            return [e.model_copy(deep=True) for e in pending[:limit]]

    def _is_sendable(self, entry: QueueEntry, now: datetime) -> bool:
        return (
            entry.status == QueueStatus.COMPLETED
            and entry.sent_at is None
            and entry.scheduled_send_at is not None
            and entry.scheduled_send_at <= now
            and (
                entry.delivery_owner is None
                or self._lease_expired(entry.delivery_started_at, now)
            )
        )

    async def list_sendable(self, now: Optional[datetime] = None, limit: int = 50) -> list[QueueEntry]:
        async with self._lock:
            now = now or self.clock.now()
            ready = [e for e in self._entries.values() if self._is_sendable(e, now)]
            ready.sort(key=lambda e: e.scheduled_send_at)
            return [e.model_copy(deep=True) for e in ready[:limit]]

    async def claim_delivery(self, entry_id: str, owner_id: str) -> bool:
        async with self._lock:
            entry = self._entries.get(entry_id)
            now = self.clock.now()
            if entry is None or not self._is_sendable(entry, now):
                return False
            entry.delivery_owner = owner_id
            entry.delivery_started_at = now
            return True

    async def release_delivery(self, entry_id: str, owner_id: str) -> None:
        async with self._lock:
            entry = self._require(entry_id)
            if entry.delivery_owner == owner_id:
                entry.delivery_owner = None
                entry.delivery_started_at = None

    async def mark_sent(self, entry_id: str) -> QueueEntry:
        async with self._lock:
            entry = self._require(entry_id)
            if entry.sent_at is not None:
                return entry.model_copy(deep=True)

            now = self.clock.now()
            if entry.scheduled_send_at is None or entry.scheduled_send_at > now:
                raise InvalidState(f"Entry {entry_id} is not due for sending yet")
            check_transition(entry.status, QueueStatus.SENT)

            entry.status = QueueStatus.SENT
            entry.sent_at = now
            entry.delivery_owner = None
            entry.delivery_started_at = None
            entry.updated_at = now
            return entry.model_copy(deep=True)

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    async def count_by_status(self) -> dict[str, int]:
        """Entry counts per status, for the daemon status table."""
        async with self._lock:
            counts: dict[str, int] = {}
            for entry in self._entries.values():
                counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
            return counts
