import time

from sentiment_fusion.live.metrics import Histogram, Metrics


def test_histogram_percentiles():
    h = Histogram()
    for v in range(1, 101):
        h.observe(v)
    snap = h.snapshot()
    assert snap["count"] == 100
    assert snap["min"] == 1.0 and snap["max"] == 100.0
    assert snap["p50"] == 50.0
    assert snap["p99"] == 99.0
    assert snap["sum"] == sum(range(1, 101))


def test_empty_histogram():
    assert Histogram().snapshot() == {"count": 0}


def test_counters_and_snapshot():
    m = Metrics()
    m.inc("accepted")
    m.inc("accepted", 2)
    m.inc("custom_counter")
    m.record_alert("SENTIMENT_SPIKE")
    m.set_queue_depth("p0", 3)
    snap = m.snapshot()
    assert snap["counters"]["accepted"] == 3
    assert snap["counters"]["custom_counter"] == 1
    assert snap["counters"]["alerts_emitted"] == 1
    assert snap["alerts_by_type"] == {"SENTIMENT_SPIKE": 1}
    assert snap["queues"] == {"p0": 3}


def test_latency_observation():
    m = Metrics()
    start = time.perf_counter_ns()
    ms = m.observe_ingest_to_result(start, start + 2_500_000)
    assert ms == 2.5
    assert m.snapshot()["latency_ingest_to_result"]["count"] == 1


def test_prometheus_export():
    m = Metrics()
    m.inc("accepted", 5)
    m.record_alert("FEAR_GREED_EXTREME")
    m.set_queue_depth("p1", 2)
    m.observe_ingest_to_result(0, 1_000_000)
    text = m.to_prometheus()
    assert "# TYPE sentiment_fusion_accepted_total counter" in text
    assert "sentiment_fusion_accepted_total 5" in text
    assert 'sentiment_fusion_alerts_total{type="FEAR_GREED_EXTREME"} 1' in text
    assert 'sentiment_fusion_queue_depth{queue="p1"} 2' in text
    assert 'sentiment_fusion_latency_ingest_to_result_ms{quantile="0.5"} 1.0' in text
    assert text.endswith("\n")
