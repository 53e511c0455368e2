"""Bounded, coalescing ingestion queue for one entity partition.

Single consumer (the partition worker), producers on the same event loop.
Pending observations are keyed by (entity, source): a newer observation for
a key replaces the pending one and moves to the tail, so arrival order is
kept and a partition never holds more than one pending reading per key.
When the queue is full and nothing can be coalesced the oldest pending entry
is dropped to make room for the newest.

Memory bound: `capacity` entries per partition; for a single entity the
bound is the number of distinct sources, whatever the burst size.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from enum import Enum
from typing import List, Optional, Tuple

from sentiment_fusion.core.types import SourceObservation

_Key = Tuple[str, str]


class PutOutcome(str, Enum):
    ENQUEUED = "enqueued"
    COALESCED = "coalesced"          # replaced a pending observation for the same key
    DROPPED_OLDEST = "dropped_oldest"  # accepted, oldest pending entry evicted


class CoalescingQueue:
    def __init__(self, capacity: int, name: str = ""):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._cap = capacity
        self.name = name
        self._pending: "OrderedDict[_Key, SourceObservation]" = OrderedDict()
        self._not_empty = asyncio.Event()
        self.coalesced = 0
        self.dropped = 0
        self.last_dropped: Optional[SourceObservation] = None

    @staticmethod
    def key_of(obs: SourceObservation) -> _Key:
        return (obs.entity, obs.source.value)

    def put_nowait(self, obs: SourceObservation) -> PutOutcome:
        """Never blocks, never raises on overflow."""
        key = self.key_of(obs)
        outcome = PutOutcome.ENQUEUED
        if key in self._pending:
            # move to the tail so per-entity order follows arrival order
            del self._pending[key]
            self.coalesced += 1
            outcome = PutOutcome.COALESCED
        elif len(self._pending) >= self._cap:
            _, self.last_dropped = self._pending.popitem(last=False)
            self.dropped += 1
            outcome = PutOutcome.DROPPED_OLDEST
        self._pending[key] = obs
        self._not_empty.set()
        return outcome

    def get_nowait(self) -> SourceObservation:
        if not self._pending:
            raise asyncio.QueueEmpty()
        _, obs = self._pending.popitem(last=False)
        if not self._pending:
            self._not_empty.clear()
        return obs

    async def get(self) -> SourceObservation:
        while not self._pending:
            self._not_empty.clear()
            await self._not_empty.wait()
        return self.get_nowait()

    def drain(self) -> List[SourceObservation]:
        out = list(self._pending.values())
        self._pending.clear()
        self._not_empty.clear()
        return out

    def discard_entity(self, entity: str) -> int:
        keys = [k for k in self._pending if k[0] == entity]
        for k in keys:
            del self._pending[k]
        if not self._pending:
            self._not_empty.clear()
        return len(keys)

    def __len__(self) -> int:
        return len(self._pending)

    def capacity(self) -> int:
        return self._cap

    def empty(self) -> bool:
        return not self._pending


__all__ = ["CoalescingQueue", "PutOutcome"]
