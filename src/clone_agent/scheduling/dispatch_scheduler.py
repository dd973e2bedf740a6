"""
Dispatch Scheduler - decides when a generated reply goes out.

It only persists a send time; the Sender Loop does the sending.

Rules:
- Inside operating hours: now + pacing delay (base +/- jitter).
- Outside: exactly the start of the next operating window.
- Globally, unsent replies never share a calendar minute and sit at least
  60 seconds apart. An occupied candidate is pushed forward a minute at a
  time; if that leaves the operating window it rolls to the next start.

The store enforces the minute rule too (SlotTaken), so two schedulers
racing for the same minute settle it there and the loser recomputes.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from clone_agent.core.errors import SlotTaken
from clone_agent.core.models import QueueEntry
from clone_agent.humanizer.timing import PacingTiming
from clone_agent.temporal.buffer_store import BufferStore, minute_key
from clone_agent.temporal.clock import OperatingClock

logger = logging.getLogger(__name__)

SLOT_SPACING = timedelta(seconds=60)
MAX_SCHEDULE_ATTEMPTS = 10
# One week of minutes; the search always ends long before this
MAX_SLOT_STEPS = 7 * 24 * 60

class DispatchScheduler:
    """
    Computes and persists send times.

    Attributes:
        store: Buffer Store to persist into
        clock: Clock and operating hours
        timing: Source of the in-window pacing delay
    """

    def __init__(
        self,
        store: BufferStore,
        clock: Optional[OperatingClock] = None,
        timing: Optional[PacingTiming] = None,
        max_attempts: int = MAX_SCHEDULE_ATTEMPTS,
    ):
        self.store = store
        self.clock = clock or store.clock
        self.timing = timing or PacingTiming()
        self.max_attempts = max_attempts

    def _roll_into_hours(self, candidate: datetime) -> datetime:
        if self.clock.is_within_hours(candidate):
            return candidate
        return self.clock.next_window_start(candidate)

    def find_free_slot(self, candidate: datetime, occupied: Iterable[datetime]) -> datetime:
        """
        First time at or after candidate that no occupied send time conflicts with.

        A conflict is the same calendar minute or less than 60 seconds apart.
        """
        taken = sorted(occupied)
        candidate = self._roll_into_hours(candidate)

        for _ in range(MAX_SLOT_STEPS):
            conflicts = [
                t for t in taken
                if minute_key(t) == minute_key(candidate) or abs(t - candidate) < SLOT_SPACING
            ]
            if not conflicts:
                return candidate
            candidate = self._roll_into_hours(max(conflicts) + SLOT_SPACING)

        raise SlotTaken(minute_key(candidate))

    def compute_send_at(
        self, occupied: Iterable[datetime], now: Optional[datetime] = None
    ) -> datetime:
        """
        Send time for a reply completed at now.

        Args:
            occupied: Send times of every reply not yet sent
            now: Completion time, defaults to the clock

        Returns:
            Aware UTC datetime
        """
        now = now or self.clock.now()
        if self.clock.is_within_hours(now):
            candidate = now + timedelta(seconds=self.timing.get_reply_delay())
        else:
            candidate = self.clock.next_window_start(now)
        return self.find_free_slot(candidate, occupied)

    async def schedule(self, entry: QueueEntry) -> datetime:
        """
        Compute and persist the send time for a completed entry.

        Raises:
            SlotTaken: If every attempt lost the slot to a concurrent scheduler
        """
        last_error: Optional[SlotTaken] = None

        for attempt in range(1, self.max_attempts + 1):
            occupied = [
                t for t in await self.store.occupied_send_times()
                if t != entry.scheduled_send_at
            ]
            send_at = self.compute_send_at(occupied)
            try:
                await self.store.schedule(entry.id, send_at)
            except SlotTaken as e:
                last_error = e
                logger.debug(
                    f"Slot {send_at.isoformat()} taken for {entry.short_id()} "
                    f"(attempt {attempt}), recomputing"
                )
                continue

            local = self.clock.to_local(send_at)
            logger.info(
                f"Scheduled {entry.short_id()} for {local.strftime('%Y-%m-%d %H:%M:%S %Z')}"
            )
            return send_at

        raise last_error
