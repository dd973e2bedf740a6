#!/usr/bin/env python3
"""
Clone Agent Daemon.
Long-running service that buffers inbound chat messages, generates replies
once each collection window closes and delivers them at paced send times.

Wiring:
    webhook payload -> Collector -> Buffer Store
    Processor Loop  -> Generation Queue -> Dispatch Scheduler
    Sender Loop     -> Chunker + Pacing -> WAHA

The process has no HTTP listener of its own. Inbound WAHA webhooks reach
the queue only when a web app embedding the daemon calls
AgentDaemon.handle_webhook() with the decoded JSON body; run standalone,
the daemon processes and delivers what is already in the store.

Several daemons can run against the same database; all coordination goes
through the store's leases and conditional updates.
"""
import argparse
import asyncio
import os
import signal
import socket
import uuid
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from clone_agent.core.config import load_config
from clone_agent.core.logging_setup import configure_logging
from clone_agent.core.models import AgentConfig, QueueEntry, QueueStatus
from clone_agent.database import close_pool, init_database
from clone_agent.database.queue_db import PostgresBufferStore
from clone_agent.humanizer import Chunker, PacingTiming
from clone_agent.integrations import (
    ChatTransport,
    EndpointRegistry,
    GenerationQueue,
    OpenAICompatibleGenerator,
    ReplyGenerator,
    WahaClient,
)
from clone_agent.scheduling import DispatchScheduler, Processor, Sender
from clone_agent.temporal import (
    BufferStore,
    Collector,
    InMemoryBufferStore,
    OperatingClock,
    RecentEventSet,
)

console = Console()

STATUS_INTERVAL_SECONDS = 60 * 5

def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"

class AgentDaemon:
    """Main daemon that orchestrates collection, processing and delivery."""

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        worker_id: Optional[str] = None,
        run_processor: bool = True,
        run_sender: bool = True,
        store: Optional[BufferStore] = None,
        transport: Optional[ChatTransport] = None,
        generator: Optional[ReplyGenerator] = None,
        clock: Optional[OperatingClock] = None,
    ):
        self.config = config
        self.worker_id = worker_id or default_worker_id()
        self.run_processor = run_processor
        self.run_sender = run_sender
        self.store = store
        self.transport = transport
        self.generator = generator
        self.clock = clock

        self.recent_events: Optional[RecentEventSet] = None
        self.collector: Optional[Collector] = None
        self.generation_queue: Optional[GenerationQueue] = None
        self.scheduler: Optional[DispatchScheduler] = None
        self.processor: Optional[Processor] = None
        self.sender: Optional[Sender] = None
        self.endpoints: Optional[EndpointRegistry] = None
        self._uses_database = False
        self.running = False
        self.stats = {
            "webhooks_received": 0,
            "items_buffered": 0,
            "started_at": None,
        }

    async def initialize(self) -> None:
        """Initialize all components."""
        console.print("[bold blue]Initializing Clone Agent Daemon...[/bold blue]")

        if self.config is None:
            self.config = load_config()
        console.print("  [green]✓[/green] Config loaded")

        if self.clock is None:
            self.clock = OperatingClock(self.config.operating_hours)

        if self.store is None:
            self.store = await self._create_store()

        self.recent_events = RecentEventSet(clock=self.clock)
        self.collector = Collector(
            self.store,
            recent_events=self.recent_events,
            default_window_seconds=self.config.collection_window_seconds,
            group_windows=self.config.group_windows,
        )
        console.print(
            f"  [green]✓[/green] Collector ready "
            f"(window {self.config.collection_window_seconds}s)"
        )

        enabled = self.config.enabled_endpoints or (
            [self.config.waha_session] if self.config.waha_session else None
        )
        self.endpoints = EndpointRegistry(enabled)
        timing = PacingTiming.from_config(self.config)

        if self.run_processor:
            if self.generator is None:
                self.generator = OpenAICompatibleGenerator(
                    base_url=self.config.generation_base_url,
                    api_key=self.config.generation_api_key,
                    model=self.config.generation_model,
                    system_prompt=self.config.system_prompt,
                    timeout=self.config.generation_timeout_seconds,
                )
            self.generation_queue = GenerationQueue(self.generator)
            self.scheduler = DispatchScheduler(self.store, clock=self.clock, timing=timing)
            self.processor = Processor(
                self.store,
                self.generation_queue,
                self.scheduler,
                worker_id=self.worker_id,
                endpoints=self.endpoints,
                poll_interval_seconds=self.config.processor_poll_seconds,
                batch_size=self.config.batch_size,
                console=console,
            )
            console.print(f"  [green]✓[/green] Processor ready ({self.config.generation_model})")

        if self.run_sender:
            if self.transport is None:
                self.transport = WahaClient(self.config.waha_url, api_key=self.config.waha_api_key)
            self.sender = Sender(
                self.store,
                self.transport,
                worker_id=self.worker_id,
                chunker=Chunker.from_config(self.config),
                timing=timing,
                inter_chunk_delay=self.config.inter_chunk_delay_seconds,
                poll_interval_seconds=self.config.sender_poll_seconds,
                batch_size=self.config.batch_size,
                console=console,
            )
            console.print("  [green]✓[/green] Sender ready")

        hours = self.config.operating_hours
        console.print(
            f"  [green]✓[/green] Operating hours {hours.start_time}-{hours.end_time} "
            f"({hours.timezone}), worker {self.worker_id}"
        )

    async def _create_store(self) -> BufferStore:
        if self.config.database_url:
            os.environ.setdefault("DATABASE_URL", self.config.database_url)
            try:
                await init_database()
            except RuntimeError as e:
                console.print(f"[red bold]Database initialization failed: {e}[/red bold]")
                raise
            self._uses_database = True
            console.print("  [green]✓[/green] Postgres buffer store")
            return PostgresBufferStore(
                max_retries=self.config.max_retries,
                lease_timeout=self.config.lease_timeout,
                clock=self.clock,
            )

        console.print(
            "  [yellow]![/yellow] DATABASE_URL not set, using in-memory store "
            "(single process, not durable)"
        )
        return InMemoryBufferStore(
            max_retries=self.config.max_retries,
            lease_timeout=self.config.lease_timeout,
            clock=self.clock,
        )

    async def handle_webhook(self, payload: dict) -> Optional[QueueEntry]:
        """
        Buffer one inbound webhook event.

        Returns as soon as the item is appended; generation and delivery
        happen later in the poll loops.

        Returns:
            The entry the item landed in, or None if it was dropped.
        """
        self.stats["webhooks_received"] += 1
        entry = await self.collector.collect_event(payload)
        if entry is not None:
            self.stats["items_buffered"] += 1
        return entry

    async def _create_status_table(self) -> Table:
        """Create a status table for display."""
        table = Table(title="Clone Agent Status")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        if self.stats["started_at"]:
            uptime = datetime.now(timezone.utc) - self.stats["started_at"]
            table.add_row("Uptime", str(uptime).split('.')[0])

        table.add_row("Webhooks Received", str(self.stats["webhooks_received"]))
        table.add_row("Items Buffered", str(self.stats["items_buffered"]))

        dropped = sum(v for k, v in self.collector.stats.items() if k.startswith("dropped_"))
        table.add_row("Items Dropped", str(dropped))

        if self.processor:
            table.add_row("Replies Generated", str(self.processor.stats["completed"]))
            table.add_row("Failed (permanent)", str(self.processor.stats["failed_permanent"]))
        if self.sender:
            table.add_row("Replies Sent", str(self.sender.stats["sent"]))
            table.add_row("Delivery Failures", str(self.sender.stats["delivery_failures"]))

        counts = await self.store.count_by_status()
        for status in QueueStatus:
            table.add_row(f"Queue: {status.value}", str(counts.get(status.value, 0)))

        return table

    async def run(self) -> None:
        """Run the daemon until stopped."""
        self.running = True
        self.stats["started_at"] = datetime.now(timezone.utc)

        console.print(Panel.fit(
            "[bold green]Clone Agent Daemon Started[/bold green]\n"
            "Press Ctrl+C to stop",
            title="Status"
        ))

        self.recent_events.start()
        if self.generation_queue:
            self.generation_queue.start()
        if self.processor:
            await self.processor.start()
        if self.sender:
            await self.sender.start()

        last_check = datetime.now(timezone.utc)

        try:
            while self.running:
                if (datetime.now(timezone.utc) - last_check).total_seconds() >= STATUS_INTERVAL_SECONDS:
                    console.print(await self._create_status_table())
                    last_check = datetime.now(timezone.utc)

                await asyncio.sleep(1)

        except asyncio.CancelledError:
            console.print("\n[yellow]Shutdown requested...[/yellow]")
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Gracefully shutdown the daemon."""
        self.running = False
        console.print("[yellow]Shutting down...[/yellow]")

        if self.processor:
            await self.processor.stop()
        if self.sender:
            await self.sender.stop()
        if self.generation_queue:
            await self.generation_queue.stop()
        if self.recent_events:
            await self.recent_events.stop()

        if isinstance(self.transport, WahaClient):
            self.transport.close()

        if self._uses_database:
            try:
                await close_pool()
                console.print("[green]Database connections closed[/green]")
            except Exception as e:
                console.print(f"[yellow]Warning: Error closing database pool: {e}[/yellow]")

        processed = self.processor.stats["completed"] if self.processor else 0
        sent = self.sender.stats["sent"] if self.sender else 0
        console.print(Panel.fit(
            f"[bold]Final Stats[/bold]\n"
            f"Webhooks Received: {self.stats['webhooks_received']}\n"
            f"Items Buffered: {self.stats['items_buffered']}\n"
            f"Replies Generated: {processed}\n"
            f"Replies Sent: {sent}",
            title="Session Summary"
        ))

async def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Clone Agent Daemon")
    parser.add_argument(
        '--worker-id',
        default=None,
        help='Lease owner id for this process (default: host-pid-random)',
    )
    parser.add_argument(
        '--config',
        default=None,
        help='JSON config file (default: $AGENT_CONFIG_FILE)',
    )
    parser.add_argument(
        '--no-processor',
        action='store_true',
        help='Do not run the Processor Loop in this process',
    )
    parser.add_argument(
        '--no-sender',
        action='store_true',
        help='Do not run the Sender Loop in this process',
    )
    parser.add_argument(
        '--log-level',
        default=os.getenv("LOG_LEVEL", "INFO"),
        help='Logging level (default: INFO)',
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level, console=console)

    daemon = AgentDaemon(
        config=load_config(args.config),
        worker_id=args.worker_id,
        run_processor=not args.no_processor,
        run_sender=not args.no_sender,
    )

    loop = asyncio.get_running_loop()

    def signal_handler():
        daemon.running = False

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await daemon.initialize()
        await daemon.run()
    except Exception as e:
        console.print(f"[red bold]Fatal error: {e}[/red bold]")
        raise

def cli() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    cli()
