"""
Tests for the Processor Loop.

Run with:
    uv run pytest src/clone_agent/testing/test_processor.py
"""
import asyncio
import random
from datetime import timedelta

import pytest
from rich.console import Console

from clone_agent.core.errors import GenerationError, StructuralError
from clone_agent.core.models import QueueStatus
from clone_agent.humanizer.timing import PacingTiming
from clone_agent.integrations.endpoints import EndpointRegistry
from clone_agent.integrations.generation_queue import GenerationQueue
from clone_agent.scheduling.dispatch_scheduler import DispatchScheduler
from clone_agent.scheduling.processor import Processor, build_context
from clone_agent.temporal.buffer_store import InMemoryBufferStore
from clone_agent.testing.fakes import FrozenClock, ScriptedGenerator, make_item, make_key

def _processor(generator, endpoints=None, max_retries=3):
    clock = FrozenClock()
    store = InMemoryBufferStore(clock=clock, max_retries=max_retries)
    scheduler = DispatchScheduler(store, timing=PacingTiming(rng=random.Random(3)))
    processor = Processor(
        store,
        generator,
        scheduler,
        worker_id="worker-a",
        endpoints=endpoints,
        console=Console(quiet=True),
    )
    return processor, store, clock

async def _buffer(store, clock, *contents, key=None):
    key = key or make_key()
    entry = await store.get_or_create_active(key, 30)
    for content in contents:
        await store.append(entry.id, make_item(content, clock))
    return entry

def test_build_context_single_item():
    clock = FrozenClock()
    assert build_context([make_item("vcs fazem entrega?", clock)]) == "vcs fazem entrega?"

def test_build_context_numbers_every_message():
    clock = FrozenClock()
    context = build_context([
        make_item("oi", clock),
        make_item("vcs fazem entrega?", clock),
        make_item("em qual bairro?", clock),
    ])
    assert "3 mensagens" in context
    assert context.index("1. oi") < context.index("2. vcs fazem entrega?") < context.index("3. em qual bairro?")

def test_build_context_requires_items():
    with pytest.raises(StructuralError):
        build_context([])

def test_due_entry_is_answered_and_scheduled():
    async def scenario():
        generator = ScriptedGenerator("Oi! Entregamos sim, em toda a zona sul.")
        processor, store, clock = _processor(generator)
        entry = await _buffer(store, clock, "oi", "vcs fazem entrega?")

        assert await processor.run_once() == 0
        clock.advance(31)
        assert await processor.run_once() == 1

        done = await store.get(entry.id)
        assert done.status == QueueStatus.COMPLETED
        assert done.reply == "Oi! Entregamos sim, em toda a zona sul."
        assert done.scheduled_send_at is not None
        assert done.scheduled_send_at > clock.now()
        assert "2. vcs fazem entrega?" in generator.contexts[0]
        assert processor.stats["completed"] == 1

    asyncio.run(scenario())

def test_empty_replies_exhaust_retries():
    """Three empty generations fail the entry for good."""
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator(None))
        entry = await _buffer(store, clock, "oi")
        clock.advance(31)

        for attempt in range(1, 4):
            await processor.run_once()
            current = await store.get(entry.id)
            assert current.retry_count == attempt

        assert current.status == QueueStatus.FAILED
        assert await store.list_due() == []
        assert processor.stats["failed_retryable"] == 2
        assert processor.stats["failed_permanent"] == 1

    asyncio.run(scenario())

def test_transient_error_is_retried():
    async def scenario():
        generator = ScriptedGenerator(GenerationError("timeout"), "Oi!")
        processor, store, clock = _processor(generator)
        entry = await _buffer(store, clock, "oi")
        clock.advance(31)

        await processor.run_once()
        failed = await store.get(entry.id)
        assert failed.status == QueueStatus.READY
        assert "timeout" in failed.last_error

        await processor.run_once()
        assert (await store.get(entry.id)).status == QueueStatus.COMPLETED

    asyncio.run(scenario())

def test_failed_entry_does_not_stop_the_rest_of_the_cycle():
    async def scenario():
        generator = ScriptedGenerator(RuntimeError("connection reset"), "Oi!")
        processor, store, clock = _processor(generator)
        entries = []
        for counterpart in ("5511900000001", "5511900000002", "5511900000003"):
            entries.append(await _buffer(store, clock, "oi", key=make_key(counterpart)))
            clock.advance(1)
        clock.advance(31)

        assert await processor.run_once() == 2

        statuses = [(await store.get(e.id)).status for e in entries]
        assert statuses == [QueueStatus.READY, QueueStatus.COMPLETED, QueueStatus.COMPLETED]
        assert "connection reset" in (await store.get(entries[0].id)).last_error
        assert processor.stats["failed_retryable"] == 1

    asyncio.run(scenario())

def test_structural_error_fails_immediately():
    async def scenario():
        generator = ScriptedGenerator(StructuralError("GENERATION_API_KEY is not configured"))
        processor, store, clock = _processor(generator)
        entry = await _buffer(store, clock, "oi")
        clock.advance(31)

        await processor.run_once()
        failed = await store.get(entry.id)
        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 1

    asyncio.run(scenario())

def test_disabled_endpoint_is_not_answered():
    async def scenario():
        generator = ScriptedGenerator("Oi!")
        processor, store, clock = _processor(generator, endpoints=EndpointRegistry(["vendas"]))
        entry = await _buffer(store, clock, "oi", key=make_key(endpoint_id="suporte"))
        clock.advance(31)

        await processor.run_once()
        failed = await store.get(entry.id)
        assert failed.status == QueueStatus.FAILED
        assert "not authorized" in failed.last_error
        assert generator.contexts == []

    asyncio.run(scenario())

def test_late_items_are_answered_in_the_next_window():
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator("Oi!", "Custa R$ 10."))
        key = make_key()
        entry = await _buffer(store, clock, "oi", key=key)
        clock.advance(31)

        assert await store.claim(entry.id, "worker-a")
        await store.append(entry.id, make_item("quanto custa?", clock))
        await store.complete(entry.id, "Oi!", owner_id="worker-a")

        clock.advance(31)
        assert await processor.run_once() == 1
        assert processor.generator.contexts == ["quanto custa?"]

    asyncio.run(scenario())

def test_unscheduled_replies_are_recovered():
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator("Oi!"))
        entry = await _buffer(store, clock, "oi")
        clock.advance(31)
        await store.claim(entry.id, "worker-b")
        await store.complete(entry.id, "Oi!", owner_id="worker-b")

        # Too recent, the completing worker may still be scheduling it
        await processor.run_once()
        assert (await store.get(entry.id)).scheduled_send_at is None

        clock.advance(61)
        await processor.run_once()
        assert (await store.get(entry.id)).scheduled_send_at is not None
        assert processor.stats["rescheduled"] == 1

    asyncio.run(scenario())

def test_processor_through_generation_queue():
    async def scenario():
        inner = ScriptedGenerator("Oi!")
        queue = GenerationQueue(inner, spacing_seconds=0)
        processor, store, clock = _processor(queue)
        for n in range(3):
            await _buffer(store, clock, f"mensagem {n}", key=make_key(f"551190000000{n}"))
        clock.advance(31)

        assert await processor.run_once() == 3
        assert queue.stats["processed"] == 3
        await queue.stop()

    asyncio.run(scenario())

def test_poll_loop_runs_and_stops():
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator("Oi!"))
        processor.poll_interval_seconds = 0.01
        await processor.start()
        await asyncio.sleep(0.05)
        health = processor.health_check()
        await processor.stop()

        assert health["running"] is True
        assert health["polls"] >= 1
        assert health["name"] == "processor"
        assert not processor.is_running

    asyncio.run(scenario())

def test_cycle_errors_back_off():
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator("Oi!"))

        async def broken():
            raise ConnectionError("database down")

        store.list_unscheduled = lambda limit=50: broken()
        processor.poll_interval_seconds = 0.01
        await processor.start()
        await asyncio.sleep(0.05)
        await processor.stop()
        assert processor.stats["cycle_errors"] >= 1

    asyncio.run(scenario())

def test_lease_timeout_lets_another_worker_finish():
    async def scenario():
        processor, store, clock = _processor(ScriptedGenerator("Oi!"))
        entry = await _buffer(store, clock, "oi")
        clock.advance(31)
        assert await store.claim(entry.id, "crashed-worker")

        assert await processor.run_once() == 0
        clock.advance(timedelta(minutes=5).total_seconds() + 1)
        assert await processor.run_once() == 1

    asyncio.run(scenario())
