"""
Tests for inbound collection: filters, de-duplication and group policy.

Run with:
    uv run pytest src/clone_agent/testing/test_collector.py
"""
import asyncio
from datetime import timedelta

import pytest

from clone_agent.temporal.buffer_store import InMemoryBufferStore
from clone_agent.temporal.collector import Collector
from clone_agent.temporal.content_filters import (
    is_conversation_closing,
    is_only_emojis,
    should_ignore,
)
from clone_agent.temporal.recent_events import RecentEventSet
from clone_agent.testing.fakes import FrozenClock, make_item, make_key, waha_message

def _collector(group_windows=None):
    clock = FrozenClock()
    store = InMemoryBufferStore(clock=clock)
    collector = Collector(
        store,
        recent_events=RecentEventSet(ttl=timedelta(minutes=5), clock=clock),
        default_window_seconds=30,
        group_windows=group_windows,
    )
    return collector, store, clock

@pytest.mark.parametrize("text", ["👍", "❤️", "👍🏽 🙏", "😂😂😂"])
def test_emoji_only_messages(text):
    assert is_only_emojis(text)

@pytest.mark.parametrize("text", ["ok 👍", "", "   ", "kkkk", "1"])
def test_not_emoji_only(text):
    assert not is_only_emojis(text)

@pytest.mark.parametrize("text", [
    "ok", "Obrigado!", "valeu", "Beleza, valeu", "tá bom obrigada",
    "era só isso", "Muito obrigado pela ajuda", "até mais", "Tchau",
])
def test_closing_phrases(text):
    assert is_conversation_closing(text)

@pytest.mark.parametrize("text", [
    "ok?", "beleza?", "obrigado, mas qual o preço", "vcs fazem entrega?", "oi", "",
])
def test_not_closing(text):
    assert not is_conversation_closing(text)

def test_should_ignore_combines_filters():
    assert should_ignore("👍")
    assert should_ignore("valeu")
    assert not should_ignore("quanto custa a entrega")

def test_recent_event_set_expires_and_sweeps():
    clock = FrozenClock()
    seen = RecentEventSet(ttl=timedelta(minutes=5), max_size=3, clock=clock)

    assert seen.check_and_add("a") is True
    assert seen.check_and_add("a") is False
    assert "a" in seen

    clock.advance(minutes=5, seconds=1)
    assert "a" not in seen
    assert seen.sweep() == 1
    assert len(seen) == 0

    for event_id in ("b", "c", "d", "e"):
        seen.check_and_add(event_id)
    assert len(seen) == 3
    assert "b" not in seen

def test_recent_event_set_lifecycle():
    async def scenario():
        seen = RecentEventSet(ttl=timedelta(seconds=60))
        seen.start()
        seen.check_and_add("x")
        await seen.stop()
        assert len(seen) == 0

    asyncio.run(scenario())

def test_collect_buffers_burst():
    async def scenario():
        collector, store, clock = _collector()
        key = make_key()
        for n, content in enumerate(["oi", "vcs fazem entrega?", "em qual bairro?"]):
            entry = await collector.collect(key, make_item(content, clock, event_id=f"e{n}"))
            clock.advance(1)
        assert len(entry.payload) == 3
        assert collector.stats["buffered"] == 3

    asyncio.run(scenario())

def test_collect_drops_own_messages():
    async def scenario():
        collector, store, clock = _collector()
        assert await collector.collect(make_key(), make_item("oi", clock, from_me=True)) is None
        assert collector.stats["dropped_own"] == 1
        assert await store.list_due(now=clock.advance(60)) == []

    asyncio.run(scenario())

def test_collect_drops_duplicate_events():
    async def scenario():
        collector, store, clock = _collector()
        key = make_key()
        first = await collector.collect(key, make_item("oi", clock, event_id="dup"))
        second = await collector.collect(key, make_item("oi", clock, event_id="dup"))
        assert first is not None
        assert second is None
        assert collector.stats["dropped_duplicate"] == 1
        assert len((await store.get(first.id)).payload) == 1

    asyncio.run(scenario())

def test_collect_filters_closings_and_emojis():
    async def scenario():
        collector, store, clock = _collector()
        key = make_key()
        assert await collector.collect(key, make_item("valeu", clock)) is None
        assert await collector.collect(key, make_item("👍", clock)) is None
        assert collector.stats["dropped_filtered"] == 2
        assert await store.list_due(now=clock.advance(60)) == []

    asyncio.run(scenario())

def test_groups_need_a_policy():
    async def scenario():
        collector, store, clock = _collector(group_windows={"vendas": 120})
        group_item = make_item("alguém aí?", clock)

        ignored = make_key("1203630@g.us", endpoint_id="default", is_group=True)
        assert await collector.collect(ignored, group_item) is None
        assert collector.stats["dropped_group"] == 1

        allowed = make_key("1203630@g.us", endpoint_id="vendas", is_group=True)
        entry = await collector.collect(allowed, group_item, window_seconds=30)
        assert entry.window_seconds == 120

    asyncio.run(scenario())

def test_collect_event_from_webhook():
    async def scenario():
        collector, store, clock = _collector()
        entry = await collector.collect_event(waha_message("vcs fazem entrega?"))
        assert entry.conversation_key.counterpart == "5511999990000"
        assert entry.payload[0].sender_name == "Ana"

        # Same message delivered again as message.any
        duplicate = waha_message("vcs fazem entrega?")
        duplicate["event"] = "message.any"
        assert await collector.collect_event(duplicate) is None

    asyncio.run(scenario())

def test_collect_event_ignores_stickers_and_other_events():
    async def scenario():
        collector, store, clock = _collector()
        sticker = waha_message("", event_id="s1", type="sticker")
        assert await collector.collect_event(sticker) is None
        assert await collector.collect_event({"event": "session.status", "session": "default"}) is None
        assert await collector.collect_event(waha_message("   ", event_id="blank")) is None

    asyncio.run(scenario())
