"""
Processor Loop - turns elapsed collection windows into scheduled replies.

Each poll:
1. Re-schedules completed entries that never got a send time (a worker
   died between complete and schedule).
2. Lists due entries and tries to claim each one. Losing a claim to
   another worker is expected and silently skipped.
3. For each claimed entry: consolidate the payload, generate a reply,
   complete the entry and hand it to the Dispatch Scheduler.

Failures are isolated per entry and routed through fail(): transient ones
go back to ready until the retry cap, structural ones fail the entry at
once. Nothing is ever sent from here.
"""
import logging
from datetime import timedelta
from typing import Optional

from rich.console import Console

from clone_agent.core.errors import InvalidState, StructuralError
from clone_agent.core.models import InboundItem, QueueEntry, QueueStatus
from clone_agent.integrations.endpoints import EndpointRegistry
from clone_agent.integrations.generation import ReplyGenerator
from clone_agent.scheduling.dispatch_scheduler import DispatchScheduler
from clone_agent.scheduling.polling_daemon import PollingDaemon
from clone_agent.temporal.buffer_store import BufferStore

logger = logging.getLogger(__name__)

# Completed entries younger than this are left to the worker that completed them
ORPHAN_GRACE = timedelta(seconds=60)

def build_context(items: list[InboundItem]) -> str:
    """
    Consolidate a burst into one generation context.

    A single item is passed through. Several items become a numbered list
    in arrival order with an instruction to answer every one of them.
    """
    if not items:
        raise StructuralError("Entry has no payload to answer")
    if len(items) == 1:
        return items[0].content

    lines = [
        f"O contato enviou {len(items)} mensagens diferentes em sequência.",
        "Leia todas e responda cada pergunta e cada assunto mencionado, "
        "sem ignorar nenhuma mensagem.",
        "",
    ]
    for number, item in enumerate(items, start=1):
        lines.append(f"{number}. {item.content}")
    return "\n".join(lines)

class Processor(PollingDaemon):
    """
    Claims due entries and generates their replies.

    Attributes:
        store: Buffer Store
        generator: Reply generator (usually a GenerationQueue)
        scheduler: Dispatch Scheduler for completed entries
        worker_id: Lease owner id of this process
        endpoints: Endpoint enablement
        batch_size: Maximum entries per poll
    """

    name = "processor"

    def __init__(
        self,
        store: BufferStore,
        generator: ReplyGenerator,
        scheduler: DispatchScheduler,
        worker_id: str,
        endpoints: Optional[EndpointRegistry] = None,
        poll_interval_seconds: float = 10.0,
        batch_size: int = 20,
        console: Optional[Console] = None,
    ):
        super().__init__(poll_interval_seconds=poll_interval_seconds, console=console)
        self.store = store
        self.generator = generator
        self.scheduler = scheduler
        self.worker_id = worker_id
        self.endpoints = endpoints or EndpointRegistry()
        self.batch_size = batch_size
        self.stats.update({
            "claims_lost": 0,
            "completed": 0,
            "failed_retryable": 0,
            "failed_permanent": 0,
            "rescheduled": 0,
        })

    async def run_once(self) -> int:
        """
        One poll cycle.

        Returns:
            Number of entries completed in this cycle.
        """
        await self._schedule_orphans()

        due = await self.store.list_due(limit=self.batch_size)
        if not due:
            return 0

        self.console.print(f"[cyan]Processor: {len(due)} due entr{'y' if len(due) == 1 else 'ies'}[/cyan]")

        completed = 0
        for entry in due:
            try:
                if await self.process_entry(entry.id):
                    completed += 1
            except Exception as e:
                # process_entry routes its own failures; this only catches store outages
                logger.exception(f"Unexpected error processing {entry.short_id()}: {e}")
        return completed

    async def process_entry(self, entry_id: str) -> bool:
        """
        Claim and process one entry.

        Returns:
            True if the entry was completed by this call.
        """
        if not await self.store.claim(entry_id, self.worker_id):
            self.stats["claims_lost"] += 1
            logger.debug(f"Claim lost for {entry_id[:8]}")
            return False

        entry = await self.store.get(entry_id)
        if entry is None or entry.status != QueueStatus.PROCESSING:
            return False

        try:
            if not self.endpoints.is_enabled(entry.conversation_key.endpoint_id):
                raise StructuralError(
                    f"Endpoint {entry.conversation_key.endpoint_id} is not authorized to respond"
                )

            context = build_context(entry.payload[:entry.consumed_count])
            reply = await self.generator.generate(context)
            if not reply or not reply.strip():
                await self._fail(entry, "Generation returned an empty reply")
                return False

            completed = await self.store.complete(entry.id, reply.strip(), owner_id=self.worker_id)

        except StructuralError as e:
            await self._fail(entry, str(e), permanent=True)
            return False
        except InvalidState as e:
            # Our lease expired and another worker took over
            logger.warning(f"Lost ownership of {entry.short_id()}: {e}")
            return False
        except Exception as e:
            await self._fail(entry, f"{type(e).__name__}: {e}")
            return False

        self.stats["completed"] += 1
        self.console.print(
            f"[green]Reply generated for {entry.conversation_key.as_string()} "
            f"({entry.short_id()}, {entry.consumed_count} message(s))[/green]"
        )

        try:
            await self.scheduler.schedule(completed)
        except Exception as e:
            # Picked up again by the orphan sweep on the next poll
            logger.warning(f"Scheduling {entry.short_id()} failed: {e}")
        return True

    async def _fail(self, entry: QueueEntry, reason: str, permanent: bool = False) -> None:
        try:
            failed = await self.store.fail(
                entry.id, reason, permanent=permanent, owner_id=self.worker_id
            )
        except InvalidState as e:
            logger.warning(f"Could not record failure of {entry.short_id()}: {e}")
            return

        if failed.status == QueueStatus.FAILED:
            self.stats["failed_permanent"] += 1
            logger.error(
                f"Entry {entry.short_id()} failed permanently after "
                f"{failed.retry_count} attempt(s): {reason}"
            )
            self.console.print(f"[red]Entry {entry.short_id()} failed: {reason}[/red]")
        else:
            self.stats["failed_retryable"] += 1
            logger.warning(
                f"Entry {entry.short_id()} attempt {failed.retry_count} failed, "
                f"will retry: {reason}"
            )

    async def _schedule_orphans(self) -> int:
        orphans = await self.store.list_unscheduled(limit=self.batch_size)
        cutoff = self.store.clock.now() - ORPHAN_GRACE
        rescheduled = 0
        for entry in orphans:
            if entry.updated_at and entry.updated_at > cutoff:
                # Probably still being scheduled by the worker that completed it
                continue
            try:
                await self.scheduler.schedule(entry)
            except Exception as e:
                logger.warning(f"Re-scheduling {entry.short_id()} failed: {e}")
                continue
            rescheduled += 1
        if rescheduled:
            self.stats["rescheduled"] += rescheduled
            logger.info(f"Re-scheduled {rescheduled} unscheduled reply(s)")
        return rescheduled
