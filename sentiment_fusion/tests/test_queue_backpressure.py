import asyncio

import pytest

from sentiment_fusion.core.types import SENTIMENT_SOURCES
from sentiment_fusion.ingest.queue import CoalescingQueue, PutOutcome

from .factories import SEC, T0, obs


def test_same_key_is_coalesced_to_latest():
    q = CoalescingQueue(capacity=8)
    assert q.put_nowait(obs("news", 0.1, T0)) == PutOutcome.ENQUEUED
    assert q.put_nowait(obs("news", 0.2, T0 + SEC)) == PutOutcome.COALESCED
    assert len(q) == 1
    assert q.coalesced == 1
    assert q.get_nowait().value == 0.2


def test_coalesced_entry_moves_to_tail():
    q = CoalescingQueue(capacity=8)
    q.put_nowait(obs("news", 0.1, T0))
    q.put_nowait(obs("social", 0.1, T0 + SEC))
    q.put_nowait(obs("news", 0.3, T0 + 2 * SEC))
    got = q.drain()
    assert [o.source.value for o in got] == ["social", "news"]
    assert [o.ts for o in got] == sorted(o.ts for o in got)


def test_full_queue_drops_oldest():
    q = CoalescingQueue(capacity=2)
    q.put_nowait(obs("news", 0.1, T0, entity="A"))
    q.put_nowait(obs("news", 0.1, T0, entity="B"))
    assert q.put_nowait(obs("news", 0.1, T0, entity="C")) == PutOutcome.DROPPED_OLDEST
    assert q.dropped == 1
    assert q.last_dropped.entity == "A"
    assert [o.entity for o in q.drain()] == ["B", "C"]


def test_burst_for_one_entity_stays_bounded():
    sources = sorted(s.value for s in SENTIMENT_SOURCES)
    q = CoalescingQueue(capacity=1024)
    max_len = 0
    for i in range(10_000):
        q.put_nowait(obs(sources[i % len(sources)], ((i % 200) - 100) / 100.0, T0 + i))
        max_len = max(max_len, len(q))
    assert max_len <= len(sources)
    assert q.coalesced == 10_000 - len(sources)
    assert q.dropped == 0
    ts = [o.ts for o in q.drain()]
    assert ts == sorted(ts)
    assert ts[-1] == T0 + 9_999


def test_discard_entity():
    q = CoalescingQueue(capacity=8)
    q.put_nowait(obs("news", 0.1, entity="A"))
    q.put_nowait(obs("social", 0.1, entity="A"))
    q.put_nowait(obs("news", 0.1, entity="B"))
    assert q.discard_entity("A") == 2
    assert [o.entity for o in q.drain()] == ["B"]
    assert q.empty()


def test_get_nowait_on_empty_raises():
    q = CoalescingQueue(capacity=1)
    with pytest.raises(asyncio.QueueEmpty):
        q.get_nowait()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        CoalescingQueue(capacity=0)


@pytest.mark.asyncio
async def test_get_waits_for_put():
    q = CoalescingQueue(capacity=4)
    task = asyncio.create_task(q.get())
    await asyncio.sleep(0.01)
    assert not task.done()
    q.put_nowait(obs("news", 0.4))
    got = await asyncio.wait_for(task, timeout=1.0)
    assert got.value == 0.4
    assert q.empty()
