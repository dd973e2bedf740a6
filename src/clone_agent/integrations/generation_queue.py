"""
Generation Queue - single-consumer FIFO in front of a rate-limited generator.

Upstream allows one request at a time. Callers await generate() as usual;
requests are queued and a single consumer task feeds them to the wrapped
generator in arrival order. The queue is constructed and injected like any
other component, one per process.
"""
import asyncio
import logging
from typing import Optional

from clone_agent.integrations.generation import ReplyGenerator

logger = logging.getLogger(__name__)

class GenerationQueue(ReplyGenerator):
    """
    Serialises generate() calls through one consumer task.

    Attributes:
        generator: The wrapped generator
        spacing_seconds: Pause between consecutive requests
        stats: Counters for processed and failed requests
    """

    def __init__(self, generator: ReplyGenerator, spacing_seconds: float = 0.1):
        self.generator = generator
        self.spacing_seconds = spacing_seconds
        self._queue: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self.stats = {"processed": 0, "failed": 0}

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if not self.is_running:
            self._consumer = asyncio.create_task(self._consume())
            logger.info("Generation queue started")

    async def stop(self) -> None:
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None

        # Nobody will serve what is left
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if not future.done():
                future.cancel()
        logger.info("Generation queue stopped")

    async def generate(self, context: str) -> Optional[str]:
        """Queue a request and wait for its result."""
        if not self.is_running:
            self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((context, future))
        return await future

    async def _consume(self) -> None:
        while True:
            context, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await self.generator.generate(context)
                except Exception as e:
                    self.stats["failed"] += 1
                    if not future.done():
                        future.set_exception(e)
                else:
                    self.stats["processed"] += 1
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

            if not self._queue.empty() and self.spacing_seconds:
                await asyncio.sleep(self.spacing_seconds)
