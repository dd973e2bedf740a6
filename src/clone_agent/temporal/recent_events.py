"""
Recent Event Set - bounded, time-expiring set of inbound event ids.

WAHA reports the same inbound message as both "message" and "message.any".
The set remembers ids it has seen for a short while so the second copy is
dropped. Owned by whoever constructs it; start() launches the periodic
sweep task and stop() cancels it.
"""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from clone_agent.temporal.clock import OperatingClock

logger = logging.getLogger(__name__)

class RecentEventSet:
    """
    Event ids seen within the last ttl.

    Attributes:
        ttl: How long an id is remembered
        max_size: Oldest ids are evicted once this many are held
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=5),
        max_size: int = 10_000,
        clock: Optional[OperatingClock] = None,
    ):
        self.ttl = ttl
        self.max_size = max_size
        self.clock = clock or OperatingClock()
        self._seen: OrderedDict[str, datetime] = OrderedDict()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, event_id: str) -> bool:
        seen_at = self._seen.get(event_id)
        return seen_at is not None and seen_at > self.clock.now() - self.ttl

    def check_and_add(self, event_id: str) -> bool:
        """
        Record event_id.

        Returns:
            True if the id is new, False if it was already seen within ttl
        """
        if event_id in self:
            return False

        self._seen[event_id] = self.clock.now()
        self._seen.move_to_end(event_id)
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True

    def sweep(self) -> int:
        """Drop expired ids. Returns how many were removed."""
        cutoff = self.clock.now() - self.ttl
        expired = [event_id for event_id, seen_at in self._seen.items() if seen_at <= cutoff]
        for event_id in expired:
            del self._seen[event_id]
        if expired:
            logger.debug(f"Swept {len(expired)} expired event id(s)")
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.ttl.total_seconds())
            self.sweep()

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        self._seen.clear()
