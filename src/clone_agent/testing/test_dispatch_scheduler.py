"""
Tests for send-time scheduling: operating hours and one reply per minute.

Run with:
    uv run pytest src/clone_agent/testing/test_dispatch_scheduler.py
"""
import asyncio
import random
from datetime import datetime, timedelta, timezone

from clone_agent.core.models import OperatingHours
from clone_agent.humanizer.timing import PacingTiming
from clone_agent.scheduling.dispatch_scheduler import DispatchScheduler
from clone_agent.temporal.buffer_store import InMemoryBufferStore, minute_key
from clone_agent.testing.fakes import FrozenClock, make_item, make_key

# Sao Paulo is UTC-3 all year
def local(hour, minute=0, second=0, day=10):
    return datetime(2026, 3, day, hour, minute, second, tzinfo=timezone.utc) + timedelta(hours=3)

def _scheduler(start=None):
    clock = FrozenClock(start or local(12))
    store = InMemoryBufferStore(clock=clock)
    timing = PacingTiming(base_delay=5.0, jitter=2.0, rng=random.Random(42))
    return DispatchScheduler(store, timing=timing), store, clock

async def _completed(store, clock, counterpart):
    key = make_key(counterpart)
    entry = await store.get_or_create_active(key, 30)
    await store.append(entry.id, make_item("oi", clock))
    clock.advance(31)
    await store.claim(entry.id, "worker-a")
    return await store.complete(entry.id, "Oi! Tudo bem?")

def test_operating_hours_clock():
    scheduler, _, _ = _scheduler()
    clock = scheduler.clock
    assert clock.is_within_hours(local(9))
    assert clock.is_within_hours(local(20, 59, 59))
    # The end minute itself is closed
    assert not clock.is_within_hours(local(21))
    assert not clock.is_within_hours(local(21, 0, 30))
    assert clock.next_window_start(local(21, 0, 30)) == local(9, day=11)
    assert not clock.is_within_hours(local(8, 59))

    assert clock.next_window_start(local(6)) == local(9)
    assert clock.next_window_start(local(23)) == local(9, day=11)
    assert clock.next_window_start(local(10)) == local(10)

def test_send_time_inside_hours_uses_pacing_delay():
    scheduler, _, _ = _scheduler()
    now = local(12)
    send_at = scheduler.compute_send_at([], now=now)
    assert now + timedelta(seconds=3) <= send_at <= now + timedelta(seconds=7.5)

def test_send_time_outside_hours_is_next_window_start():
    scheduler, _, _ = _scheduler()
    assert scheduler.compute_send_at([], now=local(23, 30)) == local(9, day=11)
    assert scheduler.compute_send_at([], now=local(3)) == local(9)

def test_free_slot_skips_conflicts():
    scheduler, _, _ = _scheduler()
    candidate = local(12, 0, 10)

    assert scheduler.find_free_slot(candidate, []) == candidate

    # Same minute
    slot = scheduler.find_free_slot(candidate, [local(12, 0, 50)])
    assert slot == local(12, 1, 50)

    # Different minute but closer than 60 seconds
    slot = scheduler.find_free_slot(local(12, 0, 55), [local(12, 1, 5)])
    assert slot == local(12, 2, 5)

    occupied = [local(12, 0, 10), local(12, 1, 10), local(12, 2, 10)]
    slot = scheduler.find_free_slot(candidate, occupied)
    assert slot == local(12, 3, 10)
    assert all(abs(slot - t) >= timedelta(seconds=60) for t in occupied)

def test_free_slot_rolls_into_next_window():
    scheduler, _, _ = _scheduler()
    slot = scheduler.find_free_slot(local(20, 59, 30), [local(20, 59, 40)])
    assert slot == local(9, day=11)

def test_simultaneous_completions_get_distinct_minutes():
    """Two replies completed in the same second are scheduled a minute apart."""
    async def scenario():
        scheduler, store, clock = _scheduler()
        first = await _completed(store, clock, "5511900000001")
        second = await _completed(store, clock, "5511900000002")
        clock.set(local(12, 10))

        first_at = await scheduler.schedule(first)
        second_at = await scheduler.schedule(second)

        assert abs(second_at - first_at) >= timedelta(seconds=60)
        assert minute_key(first_at) != minute_key(second_at)
        assert (await store.get(first.id)).scheduled_send_at == first_at

    asyncio.run(scenario())

def test_concurrent_schedulers_never_share_a_minute():
    async def scenario():
        scheduler, store, clock = _scheduler()
        entries = [await _completed(store, clock, f"55119000000{n:02d}") for n in range(8)]
        other = DispatchScheduler(store, timing=PacingTiming(rng=random.Random(1)))

        results = await asyncio.gather(*(
            (scheduler if n % 2 else other).schedule(entry) for n, entry in enumerate(entries)
        ))
        assert len({minute_key(t) for t in results}) == len(entries)

    asyncio.run(scenario())

def test_custom_operating_hours():
    clock = FrozenClock(local(12), hours=OperatingHours(start_time="08:30", end_time="18:00"))
    store = InMemoryBufferStore(clock=clock)
    scheduler = DispatchScheduler(store)
    assert scheduler.compute_send_at([], now=local(18, 15)) == local(8, 30, day=11)
