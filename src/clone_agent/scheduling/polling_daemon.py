"""
Polling Daemon - base class for the database-driven worker loops.

The Processor Loop and the Sender Loop both poll the Buffer Store on a fixed
interval. Coordination between worker processes happens entirely through
the store's conditional updates, so any number of daemons may poll at once.

Each cycle is isolated: an exception escaping run_once() is reported and
the next poll is delayed with exponential backoff (max 5 minutes). The
loop itself never dies on an error.

Usage:
    class MyLoop(PollingDaemon):
        name = "my-loop"

        async def run_once(self) -> int:
            ...

    loop = MyLoop(poll_interval_seconds=10)
    await loop.start()
    # ... polls in background ...
    await loop.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console

MAX_BACKOFF_SECONDS = 300

class PollingDaemon:
    """
    Fixed-interval poll loop with error backoff.

    Attributes:
        poll_interval_seconds: Pause between successful cycles.
        console: Rich console for operator-facing status lines.
        stats: Counters shared with subclasses ("polls", "cycle_errors",
            "started_at" plus whatever the subclass adds).
    """

    name = "polling-daemon"

    def __init__(self, poll_interval_seconds: float = 10.0, console: Optional[Console] = None):
        self.poll_interval_seconds = poll_interval_seconds
        self.console = console or Console()
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self.stats = {
            "polls": 0,
            "cycle_errors": 0,
            "started_at": None,
        }

    async def run_once(self) -> int:
        """
        Run one poll cycle.

        Returns:
            Number of entries handled in this cycle.
        """
        raise NotImplementedError

    async def start(self) -> None:
        """
        Start the polling loop as a background task.

        Safe to call multiple times (no-op if already running).
        """
        if self._running:
            self.console.print(f"[yellow]{self.name} already running[/yellow]")
            return

        self._running = True
        self.stats["started_at"] = datetime.now(timezone.utc)
        self._poll_task = asyncio.create_task(self._poll_loop())
        self.console.print(
            f"[green]{self.name} started (interval: {self.poll_interval_seconds}s)[/green]"
        )

    async def stop(self) -> None:
        """
        Stop the polling loop.

        Cancels the background task. Work interrupted mid-entry is recovered
        by lease expiry, not by this method.
        """
        if not self._running:
            return

        self._running = False

        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass

        self.console.print(f"[green]{self.name} stopped[/green]")

    async def _poll_loop(self) -> None:
        consecutive_errors = 0

        while self._running:
            try:
                self.stats["polls"] += 1
                await self.run_once()
                consecutive_errors = 0
                await asyncio.sleep(self.poll_interval_seconds)

            except asyncio.CancelledError:
                break
            except Exception as e:
                consecutive_errors += 1
                self.stats["cycle_errors"] += 1
                backoff_delay = min(
                    self.poll_interval_seconds * (2 ** consecutive_errors),
                    MAX_BACKOFF_SECONDS,
                )
                self.console.print(
                    f"[red]{self.name} poll cycle error: {e} "
                    f"(retry in {backoff_delay}s, errors: {consecutive_errors})[/red]"
                )
                try:
                    await asyncio.sleep(backoff_delay)
                except asyncio.CancelledError:
                    break

    def health_check(self) -> dict:
        """
        Loop health for monitoring.

        Returns:
            Dictionary with running flag, uptime, poll interval and every
            counter in stats.
        """
        uptime = None
        started_at = self.stats["started_at"]
        if started_at and self._running:
            uptime = (datetime.now(timezone.utc) - started_at).total_seconds()

        health = {
            "name": self.name,
            "running": self._running,
            "uptime_seconds": uptime,
            "poll_interval_seconds": self.poll_interval_seconds,
        }
        health.update({k: v for k, v in self.stats.items() if k != "started_at"})
        return health

    @property
    def is_running(self) -> bool:
        return self._running
