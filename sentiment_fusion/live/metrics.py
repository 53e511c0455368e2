"""In-process metrics for the fusion service: counters, queue depths and
latency histograms, with a Prometheus text rendering."""
from __future__ import annotations

import statistics
import threading
import time
from collections import deque
from typing import Any, Dict, Optional

PROM_PREFIX = "sentiment_fusion"

COUNTERS = (
    "ingested",
    "accepted",
    "validation_rejected",
    "coalesced",
    "dropped_queue",
    "out_of_order",
    "duplicates",
    "no_data",
    "fusion_errors",
    "stale_updates",
    "events",
    "alerts_emitted",
    "alerts_suppressed",
    "worker_errors",
    "published",
    "publish_retries",
    "publish_dropped",
    "publish_queue_full",
    "latency_budget_exceeded",
)


class Histogram:
    def __init__(self, max_samples: int = 4096):
        self._buf = deque(maxlen=max_samples)
        self._total = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        v = float(value)
        self._buf.append(v)
        self._total += 1
        self._sum += v

    def snapshot(self) -> Dict[str, float]:
        if not self._buf:
            return {"count": 0}
        data = sorted(self._buf)
        n = len(data)

        def pct(p: float) -> float:
            return float(data[int(p * (n - 1))])

        return {
            "count": self._total,
            "sum": self._sum,
            "p50": pct(0.5),
            "p90": pct(0.9),
            "p99": pct(0.99),
            "min": float(data[0]),
            "max": float(data[-1]),
            "mean": statistics.fmean(data),
        }


class Metrics:
    """Shared by the service, its partition workers and the publisher.

    Workers and the publisher run on one event loop; the lock only matters
    for readers calling `snapshot()` from another thread.
    """

    def __init__(self) -> None:
        self.started_monotonic = time.perf_counter()
        self._lock = threading.Lock()
        # milliseconds, measured from ingest() to the end of the pipeline step
        self.latency_ingest_to_result = Histogram()
        self.latency_publish = Histogram()
        self.queue_depths: Dict[str, int] = {}
        self.counters: Dict[str, int] = {k: 0 for k in COUNTERS}
        self.alerts_by_type: Dict[str, int] = {}

    # basic mutators -------------------------------------------------
    def inc(self, key: str, value: int = 1) -> None:
        with self._lock:
            self.counters[key] = self.counters.get(key, 0) + int(value)

    def set_queue_depth(self, name: str, depth: int) -> None:
        self.queue_depths[name] = int(depth)

    def record_alert(self, alert_type: str) -> None:
        with self._lock:
            self.alerts_by_type[alert_type] = self.alerts_by_type.get(alert_type, 0) + 1
            self.counters["alerts_emitted"] += 1

    # observation helpers -------------------------------------------
    def observe_ingest_to_result(self, start_ns: int, end_ns: Optional[int] = None) -> float:
        end = end_ns if end_ns is not None else time.perf_counter_ns()
        ms = (end - int(start_ns)) / 1_000_000.0
        self.latency_ingest_to_result.observe(ms)
        return ms

    def observe_publish(self, start_ns: int, end_ns: Optional[int] = None) -> None:
        end = end_ns if end_ns is not None else time.perf_counter_ns()
        self.latency_publish.observe((end - int(start_ns)) / 1_000_000.0)

    def get(self, key: str) -> int:
        return self.counters.get(key, 0)

    # snapshot / export ------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        up = time.perf_counter() - self.started_monotonic
        with self._lock:
            counters = dict(self.counters)
            by_type = dict(self.alerts_by_type)
        return {
            "uptime_sec": round(up, 1),
            "latency_ingest_to_result": self.latency_ingest_to_result.snapshot(),
            "latency_publish": self.latency_publish.snapshot(),
            "queues": dict(self.queue_depths),
            "counters": counters,
            "alerts_by_type": by_type,
        }

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        lines = []

        for key, value in snap["counters"].items():
            lines.append(f"# TYPE {PROM_PREFIX}_{key}_total counter")
            lines.append(f"{PROM_PREFIX}_{key}_total {value}")

        if snap["alerts_by_type"]:
            lines.append(f"# TYPE {PROM_PREFIX}_alerts_total counter")
            for alert_type, value in sorted(snap["alerts_by_type"].items()):
                lines.append(f"{PROM_PREFIX}_alerts_total{{type=\"{alert_type}\"}} {value}")

        if snap["queues"]:
            lines.append(f"# TYPE {PROM_PREFIX}_queue_depth gauge")
            for name, depth in sorted(snap["queues"].items()):
                lines.append(f"{PROM_PREFIX}_queue_depth{{queue=\"{name}\"}} {depth}")

        lines.append(f"# TYPE {PROM_PREFIX}_uptime_sec gauge")
        lines.append(f"{PROM_PREFIX}_uptime_sec {snap['uptime_sec']}")

        for hist_name in ("latency_ingest_to_result", "latency_publish"):
            hist_data = snap[hist_name]
            if hist_data.get("count", 0) > 0:
                name = f"{PROM_PREFIX}_{hist_name}_ms"
                lines.append(f"# TYPE {name} summary")
                lines.append(f"{name}_count {hist_data['count']}")
                lines.append(f"{name}_sum {hist_data['sum']}")
                for pct, quantile in (("p50", "0.5"), ("p90", "0.9"), ("p99", "0.99")):
                    lines.append(f"{name}{{quantile=\"{quantile}\"}} {hist_data[pct]}")

        return "\n".join(lines) + "\n"


__all__ = ["Metrics", "Histogram", "COUNTERS"]
