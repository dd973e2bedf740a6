"""
Tests for the in-memory Buffer Store: windows, leases, retries, send slots.

Run with:
    uv run pytest src/clone_agent/testing/test_buffer_store.py
"""
import asyncio
from datetime import timedelta

import pytest

from clone_agent.core.errors import EntryNotFound, InvalidState, InvalidTransition, SlotTaken
from clone_agent.core.models import QueueStatus, check_transition
from clone_agent.temporal.buffer_store import InMemoryBufferStore, minute_key
from clone_agent.testing.fakes import FrozenClock, make_item, make_key

def _store(**kwargs):
    clock = FrozenClock()
    return InMemoryBufferStore(clock=clock, **kwargs), clock

async def _due_entry(store, clock, *contents, key=None):
    key = key or make_key()
    entry = await store.get_or_create_active(key, 30)
    for content in contents or ("oi",):
        entry = await store.append(entry.id, make_item(content, clock))
    clock.advance(31)
    return entry

def test_burst_lands_in_one_entry():
    """Three messages inside the window become one due entry with three items."""
    async def scenario():
        store, clock = _store()
        key = make_key()
        for content in ("oi", "vcs fazem entrega?", "em qual bairro?"):
            entry = await store.get_or_create_active(key, 30)
            await store.append(entry.id, make_item(content, clock))
            clock.advance(2)

        assert await store.list_due() == []
        clock.advance(30)
        due = await store.list_due()
        assert len(due) == 1
        assert [i.content for i in due[0].payload] == ["oi", "vcs fazem entrega?", "em qual bairro?"]

    asyncio.run(scenario())

def test_window_end_is_not_extended_by_appends():
    async def scenario():
        store, clock = _store()
        first = await store.get_or_create_active(make_key(), 30)
        clock.advance(20)
        again = await store.get_or_create_active(make_key(), 30)
        await store.append(again.id, make_item("mais uma", clock))
        assert again.id == first.id
        assert (await store.get(first.id)).window_end == first.window_end

    asyncio.run(scenario())

def test_concurrent_collects_share_one_active_entry():
    async def scenario():
        store, clock = _store()
        key = make_key()

        async def collect(n):
            entry = await store.get_or_create_active(key, 30)
            await store.append(entry.id, make_item(f"msg {n}", clock))
            return entry.id

        ids = await asyncio.gather(*(collect(n) for n in range(25)))
        assert len(set(ids)) == 1
        assert len((await store.get(ids[0])).payload) == 25

    asyncio.run(scenario())

def test_claim_is_exclusive():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        results = await asyncio.gather(*(store.claim(entry.id, f"worker-{n}") for n in range(10)))
        assert results.count(True) == 1
        claimed = await store.get(entry.id)
        assert claimed.status == QueueStatus.PROCESSING
        assert claimed.lease.owner_id == f"worker-{results.index(True)}"

    asyncio.run(scenario())

def test_claim_before_window_end_fails():
    async def scenario():
        store, clock = _store()
        entry = await store.get_or_create_active(make_key(), 30)
        await store.append(entry.id, make_item("oi", clock))
        assert await store.claim(entry.id, "worker-a") is False

    asyncio.run(scenario())

def test_abandoned_lease_is_reclaimable():
    """A lease held past lease_timeout lets a second worker take over."""
    async def scenario():
        store, clock = _store(lease_timeout=timedelta(minutes=5))
        entry = await _due_entry(store, clock)
        assert await store.claim(entry.id, "worker-a")

        clock.advance(minutes=4)
        assert await store.claim(entry.id, "worker-b") is False
        assert await store.list_due() == []

        clock.advance(minutes=1, seconds=1)
        assert [e.id for e in await store.list_due()] == [entry.id]
        assert await store.claim(entry.id, "worker-b") is True
        assert (await store.get(entry.id)).lease.owner_id == "worker-b"

        # The original owner can no longer complete it
        with pytest.raises(InvalidState):
            await store.complete(entry.id, "resposta", owner_id="worker-a")

    asyncio.run(scenario())

def test_retries_end_in_failed():
    async def scenario():
        store, clock = _store(max_retries=3)
        entry = await _due_entry(store, clock)

        for attempt in (1, 2):
            assert await store.claim(entry.id, "worker-a")
            failed = await store.fail(entry.id, "empty reply", owner_id="worker-a")
            assert failed.status == QueueStatus.READY
            assert failed.retry_count == attempt

        assert await store.claim(entry.id, "worker-a")
        failed = await store.fail(entry.id, "empty reply", owner_id="worker-a")
        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 3
        assert await store.list_due() == []
        assert await store.claim(entry.id, "worker-a") is False

    asyncio.run(scenario())

def test_permanent_failure_skips_retries():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        failed = await store.fail(entry.id, "endpoint disabled", permanent=True)
        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 1

    asyncio.run(scenario())

def test_fail_truncates_error():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        failed = await store.fail(entry.id, "x" * 5000)
        assert len(failed.last_error) == 1000

    asyncio.run(scenario())

def test_reply_is_write_once():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        completed = await store.complete(entry.id, "Entregamos sim!", owner_id="worker-a")
        assert completed.status == QueueStatus.COMPLETED
        assert completed.lease is None
        with pytest.raises(InvalidState):
            await store.complete(entry.id, "Outra resposta")

    asyncio.run(scenario())

def test_completing_frees_the_conversation():
    async def scenario():
        store, clock = _store()
        key = make_key()
        entry = await _due_entry(store, clock, key=key)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")

        fresh = await store.get_or_create_active(key, 30)
        assert fresh.id != entry.id
        assert fresh.status == QueueStatus.COLLECTING

    asyncio.run(scenario())

def test_late_items_carry_into_next_window():
    """Items appended while processing are not lost when the entry completes."""
    async def scenario():
        store, clock = _store()
        key = make_key()
        entry = await _due_entry(store, clock, "oi", "tudo bem?", key=key)
        await store.claim(entry.id, "worker-a")

        active = await store.get_or_create_active(key, 30)
        assert active.id == entry.id
        await store.append(entry.id, make_item("e o preço?", clock))

        completed = await store.complete(entry.id, "Oi! Tudo ótimo.", owner_id="worker-a")
        assert [i.content for i in completed.payload] == ["oi", "tudo bem?"]

        carried = await store.get_or_create_active(key, 30)
        assert carried.id != entry.id
        assert [i.content for i in carried.payload] == ["e o preço?"]
        assert carried.window_end == clock.now() + timedelta(seconds=30)

    asyncio.run(scenario())

def test_retryable_failure_keeps_late_items():
    async def scenario():
        store, clock = _store()
        key = make_key()
        entry = await _due_entry(store, clock, "oi", key=key)
        await store.claim(entry.id, "worker-a")
        await store.append(entry.id, make_item("alô?", clock))
        await store.fail(entry.id, "timeout", owner_id="worker-a")

        assert await store.claim(entry.id, "worker-a")
        reclaimed = await store.get(entry.id)
        assert reclaimed.consumed_count == 2

    asyncio.run(scenario())

def test_append_to_finished_entry_is_rejected():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")
        with pytest.raises(InvalidState):
            await store.append(entry.id, make_item("tarde demais", clock))
        with pytest.raises(EntryNotFound):
            await store.append("missing", make_item("oi", clock))

    asyncio.run(scenario())

def test_schedule_rejects_taken_minute():
    async def scenario():
        store, clock = _store()
        first = await _due_entry(store, clock, key=make_key("5511900000001"))
        second = await _due_entry(store, clock, key=make_key("5511900000002"))
        for entry in (first, second):
            await store.claim(entry.id, "worker-a")
            await store.complete(entry.id, "Oi!")

        send_at = clock.now().replace(second=5, microsecond=0) + timedelta(minutes=1)
        await store.schedule(first.id, send_at)
        with pytest.raises(SlotTaken):
            await store.schedule(second.id, send_at + timedelta(seconds=30))

        await store.schedule(second.id, send_at + timedelta(minutes=1))
        occupied = await store.occupied_send_times()
        assert len({minute_key(t) for t in occupied}) == 2

    asyncio.run(scenario())

def test_schedule_requires_completed_entry():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        with pytest.raises(InvalidState):
            await store.schedule(entry.id, clock.now())

    asyncio.run(scenario())

def test_mark_sent_is_idempotent():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")
        await store.schedule(entry.id, clock.now() + timedelta(seconds=5))

        with pytest.raises(InvalidState):
            await store.mark_sent(entry.id)

        clock.advance(5)
        first = await store.mark_sent(entry.id)
        clock.advance(60)
        second = await store.mark_sent(entry.id)
        assert first.status == QueueStatus.SENT
        assert second.sent_at == first.sent_at

    asyncio.run(scenario())

def test_sent_minute_is_free_again():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")
        await store.schedule(entry.id, clock.now())
        await store.mark_sent(entry.id)
        assert await store.occupied_send_times() == []

    asyncio.run(scenario())

def test_delivery_lease():
    async def scenario():
        store, clock = _store(lease_timeout=timedelta(minutes=5))
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")
        await store.schedule(entry.id, clock.now())

        assert [e.id for e in await store.list_sendable()] == [entry.id]
        assert await store.claim_delivery(entry.id, "sender-a")
        assert await store.claim_delivery(entry.id, "sender-b") is False
        assert await store.list_sendable() == []

        await store.release_delivery(entry.id, "sender-a")
        assert await store.claim_delivery(entry.id, "sender-b")

        clock.advance(minutes=6)
        assert await store.claim_delivery(entry.id, "sender-c")

    asyncio.run(scenario())

def test_list_unscheduled():
    async def scenario():
        store, clock = _store()
        entry = await _due_entry(store, clock)
        await store.claim(entry.id, "worker-a")
        await store.complete(entry.id, "Oi!")
        assert [e.id for e in await store.list_unscheduled()] == [entry.id]
        await store.schedule(entry.id, clock.now() + timedelta(seconds=5))
        assert await store.list_unscheduled() == []

    asyncio.run(scenario())

def test_transition_table():
    check_transition(QueueStatus.COLLECTING, QueueStatus.PROCESSING)
    check_transition(QueueStatus.PROCESSING, QueueStatus.PROCESSING)
    check_transition(QueueStatus.COMPLETED, QueueStatus.SENT)
    for source, target in [
        (QueueStatus.COLLECTING, QueueStatus.COMPLETED),
        (QueueStatus.READY, QueueStatus.FAILED),
        (QueueStatus.FAILED, QueueStatus.READY),
        (QueueStatus.SENT, QueueStatus.COMPLETED),
        (QueueStatus.COMPLETED, QueueStatus.PROCESSING),
    ]:
        with pytest.raises(InvalidTransition):
            check_transition(source, target)

def test_complete_requires_processing():
    async def scenario():
        store, clock = _store()
        entry = await store.get_or_create_active(make_key(), 30)
        with pytest.raises(InvalidTransition):
            await store.complete(entry.id, "Oi!")

    asyncio.run(scenario())
