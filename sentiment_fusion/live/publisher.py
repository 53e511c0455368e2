"""Non-blocking alert / snapshot publisher.

The pipeline hands items over with `publish_*`, which never blocks: the
handoff queue is bounded and a full queue drops the item (counted). A single
dispatch task delivers each item to every sink that accepts its kind, with a
per-attempt timeout and bounded exponential backoff between retries. An item
that exhausts its retries is dropped for that sink only.

Sinks are small capability objects with an async `send(item)` that raises
on failure; the publisher owns all retry policy.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Union

import httpx
from loguru import logger

from sentiment_fusion.core.config import PublisherSettings
from sentiment_fusion.core.errors import PublishError
from sentiment_fusion.core.types import Alert, Severity, SignalEvent

from .metrics import Metrics

ALERT = "alert"
SNAPSHOT = "snapshot"
EVENT = "event"
ALL_KINDS: FrozenSet[str] = frozenset({ALERT, SNAPSHOT, EVENT})


@dataclass(frozen=True)
class PublishItem:
    kind: str
    entity: str
    ts: int
    payload: Any

    def to_dict(self) -> Dict[str, Any]:
        body = self.payload.to_dict() if hasattr(self.payload, "to_dict") else self.payload
        return {"kind": self.kind, "entity": self.entity, "ts": self.ts, "data": body}


class Sink:
    """Base delivery target. Subclasses implement `send` and raise on failure."""
    name = "sink"
    kinds: FrozenSet[str] = frozenset({ALERT})

    def accepts(self, item: PublishItem) -> bool:
        return item.kind in self.kinds

    async def send(self, item: PublishItem) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogSink(Sink):
    name = "log"

    def __init__(self, kinds: Iterable[str] = (ALERT, EVENT)):
        self.kinds = frozenset(kinds)

    async def send(self, item: PublishItem) -> None:
        if item.kind == ALERT:
            alert: Alert = item.payload
            level = {Severity.INFO: "INFO", Severity.WARNING: "WARNING", Severity.CRITICAL: "ERROR"}[alert.severity]
            logger.log(level, f"[Alert] {alert.alert_type.value} {alert.entity} {alert.description}")
        elif item.kind == EVENT:
            ev: SignalEvent = item.payload
            logger.info(f"[Event] {ev.kind.value} {ev.entity}/{ev.signal} {ev.windows[0]}/{ev.windows[1]} {ev.direction}")
        else:
            logger.debug(f"[Snapshot] {item.entity} ts={item.ts}")


class CallbackSink(Sink):
    """Wraps a plain or async callable; handy for tests and embedding."""

    def __init__(self, fn: Callable[[PublishItem], Union[None, Awaitable[None]]],
                 kinds: Iterable[str] = (ALERT,), name: str = "callback"):
        self._fn = fn
        self.kinds = frozenset(kinds)
        self.name = name

    async def send(self, item: PublishItem) -> None:
        res = self._fn(item)
        if inspect.isawaitable(res):
            await res


class WebhookSink(Sink):
    """POSTs `PublishItem.to_dict()` as JSON."""
    name = "webhook"

    def __init__(self, url: str, timeout_sec: float = 5.0, client: Optional[httpx.AsyncClient] = None,
                 kinds: Iterable[str] = (ALERT,)):
        self.url = url
        self.kinds = frozenset(kinds)
        self._client = client or httpx.AsyncClient(timeout=timeout_sec)
        self._owns_client = client is None

    async def send(self, item: PublishItem) -> None:
        try:
            resp = await self._client.post(self.url, json=item.to_dict())
        except httpx.HTTPError as e:
            raise PublishError(f"webhook transport error: {e}") from e
        if resp.status_code >= 300:
            raise PublishError(f"webhook HTTP {resp.status_code}: {resp.text[:200]}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_sinks(cfg: PublisherSettings) -> List[Sink]:
    sinks: List[Sink] = []
    if cfg.log_sink:
        sinks.append(LogSink())
    if cfg.webhook.enabled:
        if not cfg.webhook.url:
            logger.warning("[Publisher] webhook enabled without url; skipped")
        else:
            sinks.append(WebhookSink(cfg.webhook.url, cfg.webhook.timeout_sec))
    if cfg.telegram.enabled:
        from sentiment_fusion.transport.telegram import TelegramSink
        sinks.append(TelegramSink(cfg.telegram))
    return sinks


class Publisher:
    def __init__(
        self,
        cfg: PublisherSettings,
        sinks: Optional[List[Sink]] = None,
        metrics: Optional[Metrics] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.cfg = cfg
        self.sinks: List[Sink] = list(sinks) if sinks is not None else build_sinks(cfg)
        self.metrics = metrics or Metrics()
        self._sleep = sleep
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=cfg.queue_capacity)
        self._task: Optional[asyncio.Task] = None

    # --- producer side (never blocks) -----------------------------------
    def publish(self, item: PublishItem) -> bool:
        if not any(sink.accepts(item) for sink in self.sinks):
            logger.debug(f"[Publisher] no sink accepts {item.kind}; not queued")
            return False
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.metrics.inc("publish_queue_full")
            self.metrics.inc("publish_dropped")
            logger.warning(f"[Publisher] queue full; dropping {item.kind} for {item.entity}")
            return False
        self.metrics.set_queue_depth("publisher", self._queue.qsize())
        return True

    def publish_alert(self, alert: Alert) -> bool:
        return self.publish(PublishItem(ALERT, alert.entity, alert.ts, alert))

    def publish_event(self, event: SignalEvent) -> bool:
        return self.publish(PublishItem(EVENT, event.entity, event.ts, event))

    def publish_snapshot(self, state) -> bool:
        if not self.cfg.publish_snapshots:
            return False
        return self.publish(PublishItem(SNAPSHOT, state.entity, state.last_ts or 0, state.to_dict()))

    def qsize(self) -> int:
        return self._queue.qsize()

    # --- dispatch ----------------------------------------------------------
    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="publisher-dispatch")
            logger.info(f"[Publisher] started with sinks={[s.name for s in self.sinks]}")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Publisher] stop: {self._queue.qsize()} item(s) left undelivered")
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        for sink in self.sinks:
            await sink.close()
        logger.info("[Publisher] stopped")

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self.dispatch(item)
            finally:
                self._queue.task_done()
                self.metrics.set_queue_depth("publisher", self._queue.qsize())

    async def dispatch(self, item: PublishItem) -> None:
        for sink in self.sinks:
            if sink.accepts(item):
                await self._deliver(sink, item)

    def _backoff(self, attempt: int) -> float:
        return min(self.cfg.backoff_max_sec, self.cfg.backoff_base_sec * (2 ** attempt))

    async def _deliver(self, sink: Sink, item: PublishItem) -> bool:
        attempts = self.cfg.max_retries + 1
        for attempt in range(attempts):
            start = time.perf_counter_ns()
            try:
                await asyncio.wait_for(sink.send(item), timeout=self.cfg.send_timeout_sec)
            except asyncio.TimeoutError:
                err = f"timed out after {self.cfg.send_timeout_sec}s"
            except PublishError as e:
                err = str(e)
            except Exception as e:
                # any sink failure counts as a failed attempt
                err = f"{type(e).__name__}: {e}"
            else:
                self.metrics.observe_publish(start)
                self.metrics.inc("published")
                return True
            if attempt + 1 < attempts:
                delay = self._backoff(attempt)
                self.metrics.inc("publish_retries")
                logger.warning(f"[Publisher] {sink.name} attempt {attempt + 1}/{attempts} failed ({err}); retry in {delay:.2f}s")
                await self._sleep(delay)
            else:
                logger.error(f"[Publisher] {sink.name} gave up on {item.kind} for {item.entity}: {err}")
        self.metrics.inc("publish_dropped")
        return False


__all__ = [
    "Publisher",
    "PublishItem",
    "Sink",
    "LogSink",
    "CallbackSink",
    "WebhookSink",
    "build_sinks",
    "ALERT",
    "SNAPSHOT",
    "EVENT",
]
