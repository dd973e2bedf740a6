"""
Sender Loop - the only place replies are delivered.

Each poll picks completed, unsent entries whose send time has arrived,
takes the delivery lease on each and delivers it:

    send seen -> for each chunk: composing, typing pause, stop composing,
    send chunk, inter-chunk delay (not after the last) -> mark sent

Entries are delivered one after another and chunks strictly in order.
Typing indicator and seen receipt errors are logged and skipped. A
send_chunk error mid-sequence releases the delivery lease without marking
the entry sent, so the whole reply is retried on a later poll. Chunks
already delivered are sent again; that duplication is accepted.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from rich.console import Console

from clone_agent.core.models import QueueEntry
from clone_agent.humanizer.chunker import Chunker, remove_final_period
from clone_agent.humanizer.timing import PacingTiming
from clone_agent.integrations.waha import ChatTransport
from clone_agent.scheduling.polling_daemon import PollingDaemon
from clone_agent.temporal.buffer_store import BufferStore

logger = logging.getLogger(__name__)

class Sender(PollingDaemon):
    """
    Delivers scheduled replies in paced chunks.

    Attributes:
        store: Buffer Store
        transport: Chat transport
        chunker: Pacing-mode chunker
        timing: Typing duration source
        worker_id: Delivery lease owner id of this process
        inter_chunk_delay: Seconds between consecutive chunks
        sleep: Awaitable used for every pause (replaced in tests)
    """

    name = "sender"

    def __init__(
        self,
        store: BufferStore,
        transport: ChatTransport,
        worker_id: str,
        chunker: Optional[Chunker] = None,
        timing: Optional[PacingTiming] = None,
        inter_chunk_delay: float = 2.0,
        poll_interval_seconds: float = 10.0,
        batch_size: int = 20,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        console: Optional[Console] = None,
    ):
        super().__init__(poll_interval_seconds=poll_interval_seconds, console=console)
        self.store = store
        self.transport = transport
        self.worker_id = worker_id
        self.chunker = chunker or Chunker()
        self.timing = timing or PacingTiming()
        self.inter_chunk_delay = inter_chunk_delay
        self.batch_size = batch_size
        self.sleep = sleep
        self.stats.update({
            "sent": 0,
            "delivery_failures": 0,
            "chunks_sent": 0,
        })

    async def run_once(self) -> int:
        """
        One poll cycle.

        Returns:
            Number of entries marked sent in this cycle.
        """
        sendable = await self.store.list_sendable(limit=self.batch_size)
        if not sendable:
            return 0

        sent = 0
        for entry in sendable:
            try:
                if await self.deliver(entry):
                    sent += 1
            except Exception as e:
                logger.exception(f"Unexpected error delivering {entry.short_id()}: {e}")
        return sent

    async def deliver(self, entry: QueueEntry) -> bool:
        """
        Deliver one entry under the delivery lease.

        Returns:
            True if the entry was delivered and marked sent.
        """
        if not await self.store.claim_delivery(entry.id, self.worker_id):
            logger.debug(f"Delivery of {entry.short_id()} owned by another sender")
            return False

        key = entry.conversation_key
        chunks = [remove_final_period(c) for c in self.chunker.split_paced(entry.reply or "")]
        chunks = [c for c in chunks if c]

        index = 0
        try:
            await self._send_seen(entry)
            for index, chunk in enumerate(chunks):
                await self._send_chunk(entry, chunk)
                self.stats["chunks_sent"] += 1
                if index < len(chunks) - 1:
                    await self.sleep(self.inter_chunk_delay)
        except Exception as e:
            self.stats["delivery_failures"] += 1
            logger.warning(
                f"Delivery of {entry.short_id()} to {key.as_string()} failed "
                f"after {index} of {len(chunks)} chunk(s): {e}"
            )
            self.console.print(f"[red]Delivery failed for {key.as_string()}: {e}[/red]")
            await self.store.release_delivery(entry.id, self.worker_id)
            return False

        await self.store.mark_sent(entry.id)
        self.stats["sent"] += 1
        self.console.print(
            f"[green]Reply delivered to {key.as_string()} ({len(chunks)} chunk(s))[/green]"
        )
        return True

    async def _send_seen(self, entry: QueueEntry) -> None:
        try:
            await self.transport.send_seen(entry.conversation_key)
        except Exception as e:
            logger.debug(f"send_seen failed for {entry.short_id()}, continuing: {e}")

    async def _send_chunk(self, entry: QueueEntry, chunk: str) -> None:
        key = entry.conversation_key
        try:
            await self.transport.start_composing(key)
        except Exception as e:
            logger.warning(f"start_composing failed for {entry.short_id()}, sending anyway: {e}")
        try:
            await self.sleep(self.timing.get_typing_duration())
        finally:
            try:
                await self.transport.stop_composing(key)
            except Exception as e:
                logger.debug(f"stop_composing failed for {entry.short_id()}: {e}")
        await self.transport.send_chunk(key, chunk)
