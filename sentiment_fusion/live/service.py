"""Partitioned asyncio service around the per-entity pipeline.

Entities are routed to one of `runtime.partitions` partitions by
`crc32(entity) % P`. Each partition owns a coalescing queue, an
`EntityPipeline` and a single worker task, so every entity has exactly one
writer and its observations are processed in arrival order.

Flow per observation:
    ingest() -> normalize (sync, may raise) -> partition queue (never blocks)
    worker -> EntityPipeline.process -> publisher (never blocks)
"""
from __future__ import annotations

import asyncio
import time
import zlib
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from sentiment_fusion.core.config import Settings, SettingsHolder, settings_from_dict
from sentiment_fusion.core.errors import ObservationValidationError
from sentiment_fusion.core.types import NoData, SnapshotValue, SourceObservation
from sentiment_fusion.engine.pipeline import DUPLICATE, OUT_OF_ORDER, EntityPipeline, PipelineResult
from sentiment_fusion.engine.smoothing import SignalState
from sentiment_fusion.ingest.normalizer import ObservationNormalizer
from sentiment_fusion.ingest.queue import CoalescingQueue, PutOutcome

from .metrics import Metrics
from .publisher import Publisher, Sink

Payload = Union[SourceObservation, Mapping[str, Any]]


def partition_for(entity: str, partitions: int) -> int:
    """Stable across processes (unlike `hash()`)."""
    return zlib.crc32(entity.encode("utf-8")) % partitions


def _canon(entity: str) -> str:
    return (entity or "").strip().upper()


class SentimentFusionService:
    def __init__(
        self,
        settings: Union[Settings, SettingsHolder],
        sinks: Optional[List[Sink]] = None,
        metrics: Optional[Metrics] = None,
        publisher: Optional[Publisher] = None,
    ):
        self.holder = settings if isinstance(settings, SettingsHolder) else SettingsHolder(settings)
        cfg = self.holder.current
        self.metrics = metrics or Metrics()
        self.partitions = cfg.runtime.partitions
        self._pipelines = [EntityPipeline(cfg) for _ in range(self.partitions)]
        self._queues = [CoalescingQueue(cfg.runtime.queue_capacity, name=f"p{i}") for i in range(self.partitions)]
        self.publisher = publisher or Publisher(cfg.publisher, sinks=sinks, metrics=self.metrics)
        self._ingest_ns: Dict[Tuple[str, str], int] = {}
        self._workers: List[asyncio.Task] = []
        self._busy = [False] * self.partitions
        self._running = False

    @property
    def settings(self) -> Settings:
        return self.holder.current

    def partition_of(self, entity: str) -> int:
        return partition_for(_canon(entity), self.partitions)

    # --- lifecycle ---------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.publisher.start()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"fusion-worker-{i}") for i in range(self.partitions)
        ]
        logger.info(f"[Service] started {self.partitions} partition worker(s)")

    async def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        if not self._running:
            return
        if drain:
            await self.wait_idle(timeout)
        self._running = False
        for t in self._workers:
            t.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.publisher.stop(drain_timeout=timeout)
        logger.info("[Service] stopped")

    async def wait_idle(self, timeout: float = 5.0) -> bool:
        """Wait until every partition queue is empty and no worker is mid-item."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while any(len(q) for q in self._queues) or any(self._busy):
            if loop.time() >= deadline:
                logger.warning("[Service] wait_idle timed out with work pending")
                return False
            await asyncio.sleep(0.005)
        return True

    async def __aenter__(self) -> "SentimentFusionService":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    # --- ingestion -----------------------------------------------------------
    def _normalize(self, payload: Payload) -> SourceObservation:
        self.metrics.inc("ingested")
        try:
            return ObservationNormalizer(self.holder.current).normalize(payload)
        except ObservationValidationError:
            self.metrics.inc("validation_rejected")
            raise

    def ingest(self, payload: Payload) -> PutOutcome:
        """Validate synchronously, then enqueue without blocking.

        Raises ObservationValidationError for malformed input; nothing is
        enqueued in that case.
        """
        obs = self._normalize(payload)
        idx = partition_for(obs.entity, self.partitions)
        q = self._queues[idx]
        key = CoalescingQueue.key_of(obs)
        outcome = q.put_nowait(obs)
        self._ingest_ns[key] = time.perf_counter_ns()
        self.metrics.inc("accepted")
        if outcome == PutOutcome.COALESCED:
            self.metrics.inc("coalesced")
        elif outcome == PutOutcome.DROPPED_OLDEST:
            self.metrics.inc("dropped_queue")
            if q.last_dropped is not None:
                self._ingest_ns.pop(CoalescingQueue.key_of(q.last_dropped), None)
                logger.warning(f"[Service] partition {idx} full; dropped oldest pending "
                               f"{q.last_dropped.entity}/{q.last_dropped.source.value}")
        self.metrics.set_queue_depth(q.name, len(q))
        return outcome

    def ingest_many(self, payloads: Iterable[Payload]) -> Dict[str, int]:
        counts = {"accepted": 0, "rejected": 0}
        for p in payloads:
            try:
                self.ingest(p)
            except ObservationValidationError as e:
                counts["rejected"] += 1
                logger.debug(f"[Service] rejected observation: {e}")
            else:
                counts["accepted"] += 1
        return counts

    def process_now(self, payload: Payload) -> PipelineResult:
        """Run one observation through the pipeline inline, bypassing the queue."""
        start_ns = time.perf_counter_ns()
        obs = self._normalize(payload)
        self.metrics.inc("accepted")
        pipeline = self._pipelines[partition_for(obs.entity, self.partitions)]
        result = pipeline.process(obs, self.holder.current)
        self._handle_result(result, start_ns)
        return result

    # --- workers -----------------------------------------------------------
    async def _worker(self, idx: int) -> None:
        q = self._queues[idx]
        pipeline = self._pipelines[idx]
        while self._running:
            try:
                obs = await q.get()
            except asyncio.CancelledError:
                break
            self._busy[idx] = True
            start_ns = self._ingest_ns.pop(CoalescingQueue.key_of(obs), time.perf_counter_ns())
            try:
                result = pipeline.process(obs, self.holder.current)
                self._handle_result(result, start_ns)
            except Exception:
                self.metrics.inc("worker_errors")
                logger.exception(f"[Service] partition {idx} failed on {obs.entity}/{obs.source.value} ts={obs.ts}")
            finally:
                self._busy[idx] = False
                self.metrics.set_queue_depth(q.name, len(q))

    def _handle_result(self, result: PipelineResult, start_ns: int) -> None:
        if result.rejected_reason == OUT_OF_ORDER:
            self.metrics.inc("out_of_order")
        elif result.rejected_reason == DUPLICATE:
            self.metrics.inc("duplicates")
        if result.rejected:
            return
        if result.no_data:
            self.metrics.inc("no_data", len(result.no_data))
        if result.errors:
            self.metrics.inc("fusion_errors", len(result.errors))
        if result.stale:
            self.metrics.inc("stale_updates", len(result.stale))
        if result.suppressed:
            self.metrics.inc("alerts_suppressed", result.suppressed)
        self.metrics.inc("events", len(result.events))

        for alert in result.alerts:
            self.metrics.record_alert(alert.alert_type.value)
            self.publisher.publish_alert(alert)
        for ev in result.events:
            self.publisher.publish_event(ev)
        for st in result.snapshots:
            self.publisher.publish_snapshot(st)

        ms = self.metrics.observe_ingest_to_result(start_ns)
        budget = self.holder.current.runtime.latency_budget_ms
        if ms > budget:
            self.metrics.inc("latency_budget_exceeded")
            logger.warning(f"[Service] {result.entity} took {ms:.1f}ms (> {budget}ms budget)")

    # --- query -------------------------------------------------------------
    def snapshot(self, entity: str, window: str, signal: str = "sentiment") -> Union[SnapshotValue, NoData]:
        entity = _canon(entity)
        return self._pipelines[partition_for(entity, self.partitions)].snapshot(entity, window, signal)

    def snapshot_all(self, entity: str) -> Dict[str, Dict[str, SnapshotValue]]:
        entity = _canon(entity)
        return self._pipelines[partition_for(entity, self.partitions)].snapshot_all(entity)

    def signal_state(self, entity: str, signal: str = "sentiment") -> Optional[SignalState]:
        entity = _canon(entity)
        return self._pipelines[partition_for(entity, self.partitions)].signal_state(entity, signal)

    def alert_history(self, entity: str) -> Dict[str, Dict[str, Any]]:
        entity = _canon(entity)
        pipeline = self._pipelines[partition_for(entity, self.partitions)]
        with pipeline.lock:
            return pipeline.alerts.history.for_entity(entity)

    def entities(self) -> List[str]:
        out: List[str] = []
        for p in self._pipelines:
            out.extend(p.entities())
        return sorted(out)

    # --- configuration / state management ------------------------------------
    def reconfigure(self, settings: Union[Settings, Mapping[str, Any]]) -> Settings:
        """Atomically replace the settings used by every subsequent pipeline step."""
        new = settings if isinstance(settings, Settings) else settings_from_dict(dict(settings), base=self.holder.current)
        if new.runtime.partitions != self.partitions:
            logger.warning(f"[Service] partitions change {self.partitions} -> {new.runtime.partitions} "
                           "takes effect on restart only")
        if new.publisher != self.publisher.cfg:
            logger.warning("[Service] publisher settings change takes effect on restart only")
        return self.holder.swap(new)

    def backfill(self, entity: str, signal: str, series: Sequence[Tuple[int, float]]) -> Optional[SignalState]:
        entity = _canon(entity)
        pipeline = self._pipelines[partition_for(entity, self.partitions)]
        return pipeline.backfill(entity, signal, series, self.holder.current)

    def evict(self, entity: str) -> bool:
        entity = _canon(entity)
        idx = partition_for(entity, self.partitions)
        dropped = self._queues[idx].discard_entity(entity)
        for key in [k for k in self._ingest_ns if k[0] == entity]:
            del self._ingest_ns[key]
        return self._pipelines[idx].evict(entity) or dropped > 0

    def evict_inactive(self, now_ts: Optional[int] = None) -> List[str]:
        horizon_ms = self.holder.current.runtime.eviction_horizon_sec * 1000
        evicted: List[str] = []
        for p in self._pipelines:
            evicted.extend(p.evict_inactive(horizon_ms, now_ts))
        if evicted:
            logger.info(f"[Service] evicted {len(evicted)} inactive entit(y/ies)")
        return evicted

    def queue_depths(self) -> Dict[str, int]:
        return {q.name: len(q) for q in self._queues}


__all__ = ["SentimentFusionService", "partition_for"]
